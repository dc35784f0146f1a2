"""
ChainSpark API Server
=====================

HTTP surface over one ChainSparkClient.

Endpoints:
- GET    /health
- POST   /api/v1/sparks                        -> start a chain
- GET    /api/v1/sparks?status=open            -> open chains, oldest first
- GET    /api/v1/sparks/{id}                   -> one chain
- POST   /api/v1/sparks/{id}/fragments         -> contribute
- GET    /api/v1/ideas?order=recent|top        -> completed ideas feed
- GET    /api/v1/ideas/{id}                    -> one idea
- POST   /api/v1/ideas/{id}/reactions          -> like / dislike
- DELETE /api/v1/ideas/{id}/reactions          -> clear own reaction
- POST   /api/v1/ideas/{id}/comments           -> comment

The already-authenticated user id arrives in the X-User-Id header.

Usage:
    uvicorn chainspark.api.server:app --reload
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..contracts.base import ErrorCode
from ..contracts.engagement import ReactionKind
from ..contracts.errors import ChainSparkError, ValidationError
from ..engine import ChainSparkClient, ChainSparkConfig
from ..identity import IdentityContext
from ..notifications import LoggingSink
from ..observability import configure_logging
from .mapper import map_chain, map_comment, map_contribution, map_idea

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR MAPPING
# =============================================================================

STATUS_BY_CODE = {
    ErrorCode.INVALID_TEXT: 422,
    ErrorCode.INVALID_CONFIGURATION: 422,
    ErrorCode.INVALID_IDENTITY: 401,
    ErrorCode.CHAIN_NOT_FOUND: 404,
    ErrorCode.IDEA_NOT_FOUND: 404,
    ErrorCode.CHAIN_ALREADY_COMPLETED: 409,
    ErrorCode.CONSECUTIVE_AUTHOR: 409,
    ErrorCode.VERSION_CONFLICT: 409,
    ErrorCode.REMOTE_UNREACHABLE: 503,
    ErrorCode.PERMANENT_REJECTION: 409,
}


async def chainspark_error_handler(request: Request, exc: ChainSparkError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 400)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status,
        content={"error": exc.code.name, "message": exc.message, "entity_id": exc.entity_id},
    )


# =============================================================================
# REQUEST MODELS
# =============================================================================

class TextBody(BaseModel):
    text: str


class ReactionBody(BaseModel):
    kind: ReactionKind


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_client(request: Request) -> ChainSparkClient:
    client = request.app.state.client
    if client is None:
        raise HTTPException(status_code=503, detail="client not initialised")
    return client


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> IdentityContext:
    return IdentityContext.from_headers({
        "x-user-id": x_user_id,
        "x-user-name": x_user_name,
    })


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(client: Optional[ChainSparkClient] = None) -> FastAPI:
    """
    Build the app. Without a client, one is created from CHAINSPARK_*
    environment variables on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = client is None
        if owned:
            config = ChainSparkConfig.from_env()
            configure_logging(config.observability.log_level)
            app.state.client = ChainSparkClient(config, sink=LoggingSink())
            logger.info("client initialised (local backend: %s)", config.storage.local_backend)
        else:
            app.state.client = client
        yield
        if owned:
            app.state.client.close()
            logger.info("client closed")
        app.state.client = None

    app = FastAPI(
        title="ChainSpark API",
        version="0.1.0",
        description="Collaborative five-fragment idea chains",
        lifespan=lifespan,
    )
    app.state.client = None
    app.add_exception_handler(ChainSparkError, chainspark_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request):
        """System status."""
        current = request.app.state.client
        if current is None:
            return JSONResponse(status_code=503, content={"status": "starting"})
        return {
            "status": "online",
            "remote": "reachable" if current.coordinator.remote_connected else "unreachable",
            "pending_ops": current.coordinator.pending_count(),
        }

    # -------------------------------------------------------------------------
    # SPARKS
    # -------------------------------------------------------------------------

    @app.post("/api/v1/sparks", status_code=201)
    def start_spark(
        body: TextBody,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        chain_id = client.engine.start_chain(identity.user_id, body.text)
        return map_chain(client.engine.get_chain(chain_id))

    @app.get("/api/v1/sparks")
    def list_sparks(
        status: str = "open",
        contributable: bool = False,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        if status != "open":
            raise ValidationError(f"unsupported status filter {status!r}")
        for_author = identity.user_id if contributable else None
        return {"sparks": [map_chain(c) for c in client.engine.list_open_chains(for_author)]}

    @app.get("/api/v1/sparks/{chain_id}")
    def get_spark(
        chain_id: str,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        return map_chain(client.engine.get_chain(chain_id))

    @app.post("/api/v1/sparks/{chain_id}/fragments")
    def contribute(
        chain_id: str,
        body: TextBody,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        result = client.engine.contribute(chain_id, identity.user_id, body.text)
        return map_contribution(result)

    # -------------------------------------------------------------------------
    # IDEAS
    # -------------------------------------------------------------------------

    @app.get("/api/v1/ideas")
    def list_ideas(
        order: str = "recent",
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        ideas = client.engagement.list_ideas(order)
        return {"ideas": [map_idea(i, identity.user_id) for i in ideas]}

    @app.get("/api/v1/ideas/{idea_id}")
    def get_idea(
        idea_id: str,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        return map_idea(client.engagement.get_idea(idea_id), identity.user_id)

    @app.post("/api/v1/ideas/{idea_id}/reactions")
    def react(
        idea_id: str,
        body: ReactionBody,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        idea = client.engagement.react(idea_id, identity.user_id, body.kind)
        return map_idea(idea, identity.user_id)

    @app.delete("/api/v1/ideas/{idea_id}/reactions")
    def clear_reaction(
        idea_id: str,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        idea = client.engagement.clear_reaction(idea_id, identity.user_id)
        return map_idea(idea, identity.user_id)

    @app.post("/api/v1/ideas/{idea_id}/comments", status_code=201)
    def comment(
        idea_id: str,
        body: TextBody,
        identity: IdentityContext = Depends(get_identity),
        client: ChainSparkClient = Depends(get_client),
    ):
        return map_comment(client.engagement.comment(idea_id, identity.user_id, body.text))

    return app


app = create_app()
