# backend/photo_analysis/main.py
from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlmodel import Session
from typing import Optional
import asyncio, logging

from . import collaborators, config, credits, system_config
from .analysis_client import AnalysisClient
from .broker import BrokerAdapter
from .coordinator import QueueCoordinator
from .db import init_db, get_session, engine
from .errors import QueueError, ReportNotFoundError
from .notifications import WebSocketNotifier

config.configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Inspection photo analysis queue")

# --- CORS for development ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # open for dev; lock down in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

notifier = WebSocketNotifier()
client = AnalysisClient(engine)
broker = BrokerAdapter() if config.BROKER_ENABLED else None
coordinator = QueueCoordinator(engine, client, broker, notifier)

OPERATOR_ROLES = ("admin", "dev")


def get_coordinator() -> QueueCoordinator:
    return coordinator


def get_notifier() -> WebSocketNotifier:
    return notifier


@app.on_event("startup")
async def startup():
    init_db()
    system_config.ensure_defaults(engine)
    notifier.bind_loop(asyncio.get_running_loop())
    client.load_config()
    coordinator.start()


@app.on_event("shutdown")
def shutdown():
    coordinator.shutdown()


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "reason": exc.reason, "detail": exc.message})


# --- identity (authentication happens upstream; the gateway forwards these headers) ---

class CurrentUser(BaseModel):
    id: str
    role: str = "user"

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


def current_user(x_user_id: str = Header(...), x_user_role: str = Header(default="user")) -> CurrentUser:
    return CurrentUser(id=x_user_id, role=x_user_role.lower())


def require_operator(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if not user.is_operator:
        raise HTTPException(status_code=403, detail="Operator role required")
    return user


def _scope(user: CurrentUser) -> Optional[str]:
    # operators may act on any owner's record
    return None if user.is_operator else user.id


# --- queue ---

@app.post("/queue/analyze-report/{report_id}")
def analyze_report(
    report_id: str,
    force: bool = Query(default=False),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_session),
    queue: QueueCoordinator = Depends(get_coordinator),
):
    report = collaborators.get_report(db, report_id)
    if report is None:
        raise ReportNotFoundError()
    if not user.is_operator and report.owner_id != user.id:
        raise HTTPException(status_code=403, detail="You are not allowed to analyze this report")

    # the record always belongs to the report owner, even when an operator queues it
    record = queue.enqueue(report_id, report.owner_id, force=force)
    return {
        "success": True,
        "message": "Report added to the queue",
        "position": record.position,
        "totalImages": record.total_images,
    }


@app.delete("/queue/cancel/{report_id}")
def cancel_report(
    report_id: str,
    user: CurrentUser = Depends(current_user),
    queue: QueueCoordinator = Depends(get_coordinator),
):
    queue.cancel(report_id, _scope(user))
    return {"success": True, "message": "Analysis cancelled"}


@app.get("/queue/status/{report_id}")
def queue_status(
    report_id: str,
    user: CurrentUser = Depends(current_user),
    queue: QueueCoordinator = Depends(get_coordinator),
):
    return queue.user_status(report_id, _scope(user))


@app.get("/queue/stats")
def queue_stats(user: CurrentUser = Depends(current_user), queue: QueueCoordinator = Depends(get_coordinator)):
    return queue.stats()


@app.get("/queue/admin/full")
def full_queue(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    return queue.full_queue()


@app.get("/queue/admin/global-status")
def global_status(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    return queue.global_status()


@app.post("/queue/admin/resume")
def resume_queue(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    return queue.resume_queue()


@app.get("/queue/admin/broker")
def broker_status(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    if queue.broker is None:
        return {"connected": False, "depth": 0}
    return {"connected": queue.broker.is_connected(), "depth": queue.broker.queue_depth()}


@app.delete("/queue/admin/purge")
def purge_queue(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    if queue.broker is None:
        return {"purged": 0}
    logger.warning("broker queue purge requested by %s", user.id)
    return {"purged": queue.broker.purge()}


@app.websocket("/queue/events")
async def queue_events(websocket: WebSocket):
    await websocket.accept()
    report_id = websocket.query_params.get("reportId") or websocket.query_params.get("report_id")
    if not report_id:
        await websocket.send_json({"error": "missing reportId query param"})
        await websocket.close(code=1008)
        return

    hub = get_notifier()
    hub.bind_loop(asyncio.get_running_loop(), replace=False)
    hub.join(report_id, websocket)
    try:
        await websocket.send_json({"event": "joined", "data": {"reportId": report_id}})
        while True:
            # clients don't send anything meaningful; this just waits for the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(report_id, websocket)


# --- photo quota ---

class CreditsBody(BaseModel):
    amount: int


@app.post("/credits/consume")
def consume_credit(user: CurrentUser = Depends(current_user), db: Session = Depends(get_session)):
    # called by the upload flow before each photo is stored
    remaining = credits.consume_photo_credit(db, user.id)
    return {"success": True, "photoQuota": remaining}


@app.post("/credits/{user_id}")
def add_credits(user_id: str, body: CreditsBody, user: CurrentUser = Depends(require_operator),
                db: Session = Depends(get_session)):
    quota = credits.add_photo_credits(db, user_id, body.amount)
    logger.info("photo credits for %s changed by %s", user_id, user.id)
    return {"success": True, "photoQuota": quota}


# --- configuration (operators) ---

class DefaultPromptBody(BaseModel):
    value: str


class ApiKeyBody(BaseModel):
    apiKey: str


@app.get("/config/default-prompt")
def get_default_prompt(user: CurrentUser = Depends(require_operator), db: Session = Depends(get_session)):
    return {"value": system_config.get_default_prompt(db)}


@app.put("/config/default-prompt")
def put_default_prompt(body: DefaultPromptBody, user: CurrentUser = Depends(require_operator),
                       db: Session = Depends(get_session)):
    system_config.set_default_prompt(db, body.value, user.id)
    return {"success": True, "message": "Default prompt updated"}


@app.get("/config/openai-status")
def openai_status(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    configured = queue.client.is_configured()
    return {
        "configured": configured,
        "connection": queue.client.test_connection() if configured else None,
    }


@app.put("/config/openai-key")
def put_openai_key(body: ApiKeyBody, user: CurrentUser = Depends(require_operator),
                   queue: QueueCoordinator = Depends(get_coordinator)):
    if not body.apiKey or len(body.apiKey) < 10:
        return {"success": False, "message": "Invalid API key"}
    queue.client.update_api_key(body.apiKey, user.id)
    return queue.client.test_connection()


@app.get("/config/openai-test")
def openai_test(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    return queue.client.test_connection()


@app.put("/config/openai-reload")
def openai_reload(user: CurrentUser = Depends(require_operator), queue: QueueCoordinator = Depends(get_coordinator)):
    queue.client.load_config()
    return {"success": True, "message": "Settings reloaded"}


@app.get("/health")
def health():
    return {"status": "ok", "broker": broker.is_connected() if broker else False}
