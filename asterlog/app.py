import argparse
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastmcp import FastMCP
from pydantic import BaseModel

from .config import load_config
from .core import engine, state_manager
from .protocols import AsterixParser

logger = logging.getLogger("asterlog.app")

CONFIG_ENV = "ASTERLOG_CONFIG"

class DecodeRequest(BaseModel):
    payload_hex: str

def decode_hex_payload(payload_hex: str) -> dict:
    """Runs detection and a full decode on a hex payload (whitespace allowed)."""
    payload = bytes.fromhex("".join(payload_hex.split()))
    return {
        "payload_len": len(payload),
        "is_asterix": AsterixParser.is_asterix(payload),
        "asterix": AsterixParser.decode(payload).to_dict(),
    }

def recent_captures(limit: int, protocol: Optional[str] = None) -> list:
    """The newest `limit` captures as dicts; empty when limit is not positive."""
    if limit < 1:
        return []
    history = list(state_manager.capture_log)
    if protocol:
        history = [h for h in history if h.protocol == protocol.upper()]
    return [h.__dict__ for h in history[-limit:]]

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logger.info("asterlog starting...")
    config_path = os.environ.get(CONFIG_ENV)
    if config_path:
        config = load_config(config_path)
        for listener_config in config.listeners:
            await engine.add_listener(listener_config)
    await engine.start_rotation_monitor()
    yield
    # Shutdown logic
    logger.info("asterlog shutting down...")
    await engine.shutdown()

# --- MCP Server Definition ---
mcp = FastMCP("asterlog Traffic Capture")

@mcp.tool()
def get_help() -> str:
    """
    Returns a short guide on how to inspect traffic captured by asterlog.
    Read this if you are unsure how to proceed.
    """
    return """
# asterlog Guide for AI Agents

asterlog listens on the TCP, UDP and TLS ports listed in its YAML configuration and
writes every received payload to a rotating log file. Payloads that look like
ASTERIX surveillance data (1-byte category, 2-byte big-endian length, data blocks)
are decoded and attached to the record under `asterix`.

## Workflow

1.  **See what is captured**: read the resource `capture://listeners/active`.
2.  **Inspect recent traffic**: `list_capture_history(limit=20)`. Look at:
    *   `semantic`: `ASTERIX CAT048: 1 block(s), 5 item(s)` for decoded payloads,
        `<N bytes>` for everything else.
    *   `asterix.parse_error`: the decoder stopped early; blocks before the
        failure are still listed.
    *   `asterix.unsupported`: the category has no dedicated item table, so every
        item is shown as base64 under a generic `Iccc_fff` name.
3.  **Decode a sample by hand**: `decode_payload(payload_hex="30000980020101")`.
    """

@mcp.tool()
def decode_payload(payload_hex: str) -> str:
    """
    Decode a hex-encoded payload as ASTERIX.

    Args:
        payload_hex: Payload bytes as hex, spaces allowed (e.g. "30 00 07 80 02 01 00").
    """
    try:
        return json.dumps(decode_hex_payload(payload_hex), indent=2)
    except ValueError as e:
        return f"Invalid hex payload: {e}"

@mcp.tool()
async def list_capture_history(limit: int = 10) -> str:
    """Get the most recent payloads captured by the listeners."""
    return json.dumps(recent_captures(limit), indent=2)

@mcp.resource("capture://listeners/active")
def list_active_listeners() -> str:
    """Returns the listeners currently capturing traffic."""
    listeners = [
        {"name": c.name, "port": c.port, "protocol": c.protocol.value, "log_file": c.log_file, "log_level": c.log_level.value}
        for c in state_manager.active_listeners.values()
    ]
    return json.dumps(listeners, indent=2)

# --- FastAPI App ---
app = FastAPI(lifespan=lifespan)

# Mount MCP
mcp_app = mcp.http_app(transport="sse")
app.mount("/mcp", mcp_app)

@app.get("/api/listeners")
async def get_listeners():
    return [c.model_dump(mode="json") for c in state_manager.active_listeners.values()]

@app.get("/api/history")
async def get_history(limit: int = Query(10, ge=1), protocol: Optional[str] = None):
    """Get the most recent captures, optionally filtered by protocol."""
    return recent_captures(limit, protocol)

@app.post("/api/decode")
async def decode(req: DecodeRequest):
    try:
        return decode_hex_payload(req.payload_hex)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid hex payload: {e}")

@app.delete("/api/listeners/{port}")
async def remove_listener(port: int):
    try:
        msg = await engine.remove_listener(port)
        return {"status": "success", "message": msg}
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.websocket("/ws/monitor")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    queue = await state_manager.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        logger.debug("Monitor client disconnected")
    finally:
        state_manager.unsubscribe(queue)

def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Capture TCP/UDP/TLS payloads to rotating logs.")
    parser.add_argument("--config", default="config.yaml", help="Path to configuration file")
    parser.add_argument("--host", default="0.0.0.0", help="Inspection API bind address")
    parser.add_argument("--port", type=int, default=8002, help="Inspection API port")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    os.environ[CONFIG_ENV] = args.config
    # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown
    uvicorn.run("asterlog.app:app", host=args.host, port=args.port)

if __name__ == "__main__":
    main()
