"""FastMCP entry for the WhatsApp Web session tools."""
import os
from fastmcp import FastMCP
from fastmcp.server.middleware import Middleware, MiddlewareContext

from src.config import MCP_SERVER_NAME, LOG_DIR, LOGIN_WAIT_TIMEOUT
from src.services.login_service import LoginService
from src.utils.browser_guard import BrowserGuard
from src.utils.logger import configure_logging, logger


# =============================================================================
# Parameter Filter Middleware
# =============================================================================

# Agent runtimes attach metadata (sessionId, toolCallId, ...) to tool calls
TOOL_ALLOWED_PARAMS = {
    "ensure_login_status": {"wait_timeout", "restore_session", "clear"},
    "connection_state": set(),
    "forget_session": set(),
}


class ParameterFilterMiddleware(Middleware):
    """Drops arguments a tool does not declare before FastMCP validates them."""

    async def on_call_tool(self, context: MiddlewareContext, call_next):
        tool_name = context.message.name
        allowed_params = TOOL_ALLOWED_PARAMS.get(tool_name)

        if context.message.arguments is None:
            context.message.arguments = {}

        if allowed_params is not None:
            original_args = dict(context.message.arguments)
            filtered_args = {
                key: value
                for key, value in original_args.items()
                if key in allowed_params and value is not None
            }

            removed_keys = set(original_args) - set(filtered_args)
            if removed_keys:
                logger.debug(
                    "ParameterFilterMiddleware: Tool '{}' - removed params: {}",
                    tool_name, removed_keys
                )
            context.message.arguments = filtered_args

        return await call_next(context)


# =============================================================================
# Service Initialization
# =============================================================================

mcp = FastMCP(MCP_SERVER_NAME)
mcp.add_middleware(ParameterFilterMiddleware())

configure_logging()
logger.info("Logging initialized at {}", LOG_DIR.resolve())

browser_guard = BrowserGuard()
login_service = LoginService(browser_guard=browser_guard)


# =============================================================================
# MCP Tools
# =============================================================================

@mcp.tool()
async def ensure_login_status(
    wait_timeout: float = LOGIN_WAIT_TIMEOUT,
    restore_session: bool = False,
    clear: bool = True,
) -> dict:
    """Restore the saved WhatsApp Web session and report the connection phase.

    Returns the QR code (raw and as terminal text) when the phone must pair.
    """
    logger.info("ensure_login_status called restore_session={} clear={}", restore_session, clear)
    response = await login_service.ensure_login_status(
        wait_timeout=wait_timeout,
        restore_session=restore_session,
        clear=clear,
    )
    return response.model_dump(mode="json")


@mcp.tool()
async def connection_state() -> dict:
    """Read WhatsApp Web's own connection flags without waiting."""
    state = await login_service.get_connection_state()
    return state.model_dump()


@mcp.tool()
async def forget_session() -> dict:
    """Delete the stored session token so the next restore pairs from scratch."""
    removed = login_service.forget_session()
    return {"success": True, "removed": removed}


# =============================================================================
# REST API Layer (FastAPI with MCP mounted)
# =============================================================================

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel


class LoginStatusRequest(BaseModel):
    wait_timeout: float = LOGIN_WAIT_TIMEOUT
    restore_session: bool = False
    clear: bool = True


mcp_app = mcp.http_app(path="/mcp")

app = FastAPI(
    title=MCP_SERVER_NAME,
    description="WhatsApp Web session bootstrap over Chrome DevTools",
    version="1.0.0",
    lifespan=mcp_app.lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/mcp", mcp_app)


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "service": MCP_SERVER_NAME}


@app.post("/api/login_status")
async def rest_login_status(request: LoginStatusRequest):
    """REST variant of ensure_login_status for plain HTTP callers."""
    try:
        response = await login_service.ensure_login_status(
            wait_timeout=request.wait_timeout,
            restore_session=request.restore_session,
            clear=request.clear,
        )
        return response.model_dump(mode="json")
    except Exception as e:
        logger.error("REST API error: {}", str(e))
        return {
            "success": False,
            "error": str(e),
        }


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    transport = os.getenv("FASTMCP_TRANSPORT", "stdio")
    host = os.getenv("FASTMCP_HOST", "0.0.0.0")
    port = int(os.getenv("FASTMCP_PORT", "9431"))

    if transport == "stdio":
        mcp.run(transport=transport)
    else:
        logger.info("Starting combined FastAPI + MCP server on port {}", port)
        logger.info("  - GET  http://{}:{}/api/health", host, port)
        logger.info("  - POST http://{}:{}/api/login_status", host, port)
        logger.info("  - MCP  http://{}:{}/mcp", host, port)

        uvicorn.run(app, host=host, port=port, log_level="info")
