"""
MCP Interface Layer exposing the continuity engine through fastmcp.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import RelationshipCategory, RelationshipResult, ValidationError
from .services.continuity import ContinuityError, create_service
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Discourse Continuity')
continuity_service = create_service()


@mcp.tool()
async def classify_turn(session_id: str,
                        input_text: str,
                        current_sentence: Optional[str] = None,
                        topic_hint: Optional[str] = None,
                        previous_topic_hint: Optional[str] = None) -> Dict[str, Any]:
    """Classify a new user turn and gather the context for answering it.

    Args:
        session_id: Conversation session id
        input_text: The new user utterance
        current_sentence: Sentence currently in focus, if any
        topic_hint: What the new turn is about
        previous_topic_hint: What the conversation was on before

    Returns:
        Context package with relationship, retrieved turns, patterns and continuity hints

    Raises:
        Exception: If the input is invalid or classification fails
    """
    try:
        if not session_id or not session_id.strip():
            raise ValueError('Session ID is required')

        package = await continuity_service.process_turn(input_text,
                                                        session_id,
                                                        current_sentence=current_sentence,
                                                        topic_hint=topic_hint,
                                                        previous_topic_hint=previous_topic_hint)
        logger.debug(f'MCP classify_turn: session {session_id} category {int(package.relationship.category)}')
        return package.to_dict()

    except ValueError as e:
        logger.warning(f'Rejected MCP classify_turn request: {e}')
        raise Exception(f'Invalid request: {e}')
    except Exception as e:
        logger.error(f'Unexpected error in MCP classify_turn: {e}')
        raise Exception(f'Turn classification failed: {e}')


@mcp.tool()
async def record_turn(session_id: str,
                      input_text: str,
                      response_text: str,
                      category: int,
                      transition: str,
                      confidence: float = 1.0,
                      similarity: float = 0.0,
                      resume_from_id: Optional[str] = None,
                      related_ids: Optional[List[str]] = None,
                      topic_hint: Optional[str] = None) -> Dict[str, Any]:
    """Store a completed turn together with the relationship it was classified with.

    Args:
        session_id: Conversation session id
        input_text: The user utterance
        response_text: The generated response
        category: Relationship category from classify_turn (1-9)
        transition: Transition label from classify_turn
        confidence: Classification confidence
        similarity: Classification similarity
        resume_from_id: Resumed interaction id, for resumptions
        related_ids: Related interaction ids from classify_turn
        topic_hint: Extra topic to index the turn under

    Returns:
        Stored interaction id, turn index and topics
    """
    try:
        relationship = RelationshipResult(category=RelationshipCategory(category),
                                          confidence=confidence,
                                          similarity=similarity,
                                          transition=transition,
                                          resume_from_id=resume_from_id,
                                          related_ids=tuple(related_ids or ()))
        interaction = await continuity_service.record_turn(input_text,
                                                           response_text,
                                                           relationship,
                                                           session_id,
                                                           topic_hint=topic_hint)
        return {
            'id': interaction.id,
            'turn_index': interaction.turn_index,
            'topics': list(interaction.semantics.topics),
        }

    except (ValidationError, ValueError) as e:
        logger.warning(f'Rejected MCP record_turn request: {e}')
        raise Exception(f'Invalid request: {e}')
    except ContinuityError as e:
        logger.error(f'Continuity error in MCP record_turn: {e}')
        raise Exception(f'Recording turn failed: {e}')


@mcp.tool()
async def retrieve_context(query: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Retrieve past interactions relevant to a query.

    Args:
        query: Natural language query
        limit: Maximum number of results to return (default: 10)

    Returns:
        List of interactions with fused score and per-signal scores
    """
    if not query or not query.strip():
        return []

    try:
        scored = await continuity_service.retrieval.retrieve_scored(query, limit=limit)
    except Exception as e:
        logger.error(f'Unexpected error in MCP retrieve_context: {e}')
        raise Exception(f'Context retrieval failed: {e}')

    logger.debug(f'MCP retrieve_context returned {len(scored)} interactions')
    return [{
        'id': entry.interaction.id,
        'session_id': entry.interaction.session_id,
        'input': entry.interaction.input,
        'response': entry.interaction.response,
        'created_at': entry.interaction.created_at.isoformat(),
        'score': round(entry.score, 6),
        'signals': {name: round(value, 6) for name, value in entry.signals.items()},
    } for entry in scored]


@mcp.tool()
def memory_health() -> Dict[str, Any]:
    """Report collaborator health, circuit breaker state and memory store statistics."""
    return {
        'components': get_health_status(continuity_service),
        'engine': continuity_service.health(),
    }


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
