"""FastAPI app exposing the board as a server-sent event stream.

Run with: dealboard serve  (or uvicorn "dealboard.api:app_from_settings" --factory)
"""

import logging

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from dealboard.errors import BoardError
from dealboard.models import session_to_dict
from dealboard.transport import BoardService

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class BoardRequest(BaseModel):
    deal_id: str


def create_app(service: BoardService) -> FastAPI:
    app = FastAPI(
        title="Deal Board API",
        description="Multi-model deliberation on due-diligence findings",
        version="0.1.0",
    )

    @app.exception_handler(BoardError)
    async def board_error_handler(request: Request, exc: BoardError) -> JSONResponse:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.reason, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.reason, "detail": str(exc)},
        )

    @app.post("/api/board")
    async def start_board(
        body: BoardRequest,
        background_tasks: BackgroundTasks,
        x_user_id: str = Header(...),
    ) -> StreamingResponse:
        """Convene the board on a deal and stream its progress.

        Events: session_started, member_analysis_*, debate_round_*,
                debate_response, voting_started, member_voted,
                verdict_reached | error

        If the client goes away before the stream ends, the session is
        cancelled and its credit refunded.
        """
        stream = await service.start_board(body.deal_id, x_user_id)
        background_tasks.add_task(stream.aclose)
        headers = dict(_SSE_HEADERS, **{"X-Session-Id": stream.session_id})
        return StreamingResponse(stream.sse(), media_type="text/event-stream", headers=headers)

    @app.get("/api/board/credits")
    async def credits(x_user_id: str = Header(...)) -> dict:
        status = await service.credit_status(x_user_id)
        return status.to_dict()

    @app.get("/api/board/{session_id}")
    async def get_session(session_id: str) -> dict:
        session = service.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session_to_dict(session)

    @app.get("/api/health")
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "service": "Deal Board API",
            "members": [m.id for m in service.controller.pool.members],
        }

    return app


def app_from_settings() -> FastAPI:
    """Build the app from config/settings.yaml and the environment."""
    from dealboard.cli import build_service

    return create_app(build_service())
