import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config import config
from config.utils import get_config_section
from monitoring.logging_utils import setup_logging


trading_system = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_system():
    if not trading_system:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Glicko Trading API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config_section(config, 'api').get('cors_origins') or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)


manager = ConnectionManager()


@app.get("/")
async def root():
    return {
        "service": "Glicko Relative-Strength Trading System",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped",
    }


@app.get("/health")
async def health():
    pm = trading_system.position_manager if trading_system else None
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": trading_system.running if trading_system else False,
        "halted": pm.halted if pm else False,
        "live": trading_system.live if trading_system else False,
    }


@app.get("/api/positions")
async def get_positions():
    system = _require_system()
    status = system.position_manager.get_status()
    return {
        "positions": status["positions"],
        "count": status["open_positions"],
        "max_positions": status["max_positions"],
        "risk": status["risk"],
        "timestamp": _now(),
    }


@app.get("/api/allocation")
async def get_allocation():
    system = _require_system()
    return {**system.allocation.get_allocation_status(), "timestamp": _now()}


@app.get("/api/zscores")
async def get_zscores():
    system = _require_system()
    z_scores = system.position_manager.get_z_scores()
    return {"z_scores": z_scores, "count": len(z_scores), "timestamp": _now()}


@app.get("/api/ratings")
async def get_ratings():
    system = _require_system()
    engine = system.rating_engine
    states = [engine.get_state(symbol).to_dict() for symbol in engine.store.symbols()]
    return {
        "ratings": states,
        "count": len(states),
        "clamp_events": engine.clamp_events,
        "data_quality_events": engine.data_quality_events,
        "timestamp": _now(),
    }


@app.get("/api/parameters")
async def get_parameters():
    system = _require_system()
    sets = [params.to_dict() for _, params in sorted(system.parameters.all().items())]
    return {"parameter_sets": sets, "defaults": system.parameters.defaults, "count": len(sets), "timestamp": _now()}


@app.get("/api/events")
async def get_events(name: Optional[str] = None, limit: int = 50):
    system = _require_system()
    return {"events": system.recorder.recent_events(name, limit), "timestamp": _now()}


@app.post("/api/emergency-stop")
async def emergency_stop():
    system = _require_system()
    event = await system.emergency_stop('manual')
    return {
        "status": "Emergency stop executed",
        "cancelled_orders": event.cancelled_orders,
        "cleared_positions": event.cleared_positions,
        "cleared_reservations": event.cleared_reservations,
        "timestamp": _now(),
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            if trading_system and trading_system.running:
                await websocket.send_json({
                    "type": "update",
                    "timestamp": _now(),
                    "status": trading_system.position_manager.get_status(),
                    "z_scores": trading_system.position_manager.get_z_scores(),
                })
            await asyncio.sleep(1)
    except WebSocketDisconnect:
        manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    api_cfg = get_config_section(config, 'api')
    setup_logging(get_config_section(config, 'monitoring').get('log_level', 'INFO'))
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info",
    )
