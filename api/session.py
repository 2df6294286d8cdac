"""
api/session.py (Session API endpoints)

Exposes the conversational pipeline over HTTP. The orchestrator and the conversation store are
built once at startup and read from `request.app.state`, so handlers stay thin and tests can
install fakes on a freshly created app.

Endpoints:
  - POST /sessions: Creates a new conversation session and returns its id.
  - POST /query: Processes one query within a session and returns the answer, the analysis,
                 the aggregated data, follow-up suggestions and the continuity analysis.
  - GET /sessions/{session_id}/summary: Returns the conversation summary for a session.
  - DELETE /sessions/{session_id}: Drops a session and its history.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from core.errors import ErrorKind, QueryFailedError

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_BY_KIND = {
    ErrorKind.PREPROCESSING: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONNECTION: 503,
    ErrorKind.PROVIDER: 503,
    ErrorKind.LLM: 503,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.UNEXPECTED: 500,
}


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    session_id: str = Field(..., alias="sessionId")


@router.post("/sessions")
async def create_session(request: Request):
    """
    Create a new session.

    Returns:
        JSONResponse: {"sessionId": "<uuid>"} with HTTP 201.
    """
    session_id = request.app.state.orchestrator.create_session()
    logger.info(f"[create_session] Created session {session_id}")
    return JSONResponse({"sessionId": session_id}, status_code=201)


@router.post("/query")
async def handle_query(payload: QueryRequest, request: Request):
    """
    Process one query inside a session.

    Failures are always returned as {"error": <user-safe message>, "type": "error"} with a status
    that reflects the failure kind; internal causes stay in the logs.

    Args:
        payload (QueryRequest): JSON body with `query` and `sessionId`.

    Returns:
        JSONResponse: The orchestration result on success, or an error payload.
    """
    logger.info(f"[handle_query] Query for session {payload.session_id}: '{payload.query[:80]}'")
    orchestrator = request.app.state.orchestrator
    try:
        result = await orchestrator.process_query(payload.query, payload.session_id)
    except QueryFailedError as e:
        logger.warning(f"[handle_query] Query failed for session {payload.session_id}: {e.kind.value}")
        return JSONResponse(
            {"error": e.user_message, "type": "error"},
            status_code=STATUS_BY_KIND.get(e.kind, 500),
        )
    return JSONResponse(result.to_dict())


@router.get("/sessions/{session_id}/summary")
async def get_session_summary(session_id: str, request: Request):
    store = request.app.state.store
    if not store.has_session(session_id):
        return JSONResponse({"error": "Session not found", "type": "error"}, status_code=404)
    return JSONResponse(store.get_conversation_summary(session_id).to_dict())


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    if not request.app.state.store.delete_session(session_id):
        return JSONResponse({"error": "Session not found", "type": "error"}, status_code=404)
    logger.info(f"[delete_session] Deleted session {session_id}")
    return JSONResponse({"deleted": session_id})
