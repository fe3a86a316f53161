import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .db import Base, row_dict

logger = logging.getLogger("dropgo.realtime")

router_ws = APIRouter()

# Tables clients may subscribe to.
TABLES = ("customers", "drivers", "ride_requests", "ride_messages", "ratings")


class Subscription:
    def __init__(self, ws: WebSocket, table: str, column: Optional[str] = None, value: Optional[str] = None):
        self.ws = ws
        self.table = table
        self.column = column
        self.value = value

    def matches(self, msg: Dict[str, Any]) -> bool:
        if msg.get("table") != self.table:
            return False
        if self.column is None:
            return True
        row = msg.get("old") if msg.get("event") == "DELETE" else msg.get("new")
        if not row or self.column not in row:
            return False
        return _as_filter_value(row[self.column]) == self.value


subscribers: List[Subscription] = []
queue: Optional["asyncio.Queue[Dict[str, Any]]"] = None
_loop: Optional[asyncio.AbstractEventLoop] = None


def _as_filter_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return "" if v is None else str(v)


def parse_filter(table: str, raw: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Parse ``col=eq.value``; only equality on a real column is supported."""
    if table not in TABLES:
        raise ValueError("unknown table")
    if not raw:
        return None, None
    col, sep, rest = raw.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError("bad filter")
    mapped = {m.class_.__tablename__: m.local_table for m in Base.registry.mappers}
    # metadata keys carry the schema prefix when DB_SCHEMA is set
    if table not in mapped or col not in mapped[table].columns:
        raise ValueError("bad filter")
    return col, rest[3:]


def bind_loop(loop: asyncio.AbstractEventLoop) -> "asyncio.Queue[Dict[str, Any]]":
    global _loop, queue
    _loop = loop
    queue = asyncio.Queue()
    return queue


def unbind_loop():
    global _loop, queue
    _loop = None
    queue = None


def publish(table: str, event: str, new: Optional[Dict[str, Any]] = None, old: Optional[Dict[str, Any]] = None):
    """Hand a change event to the hub. Safe to call from worker threads."""
    loop, q = _loop, queue
    if loop is None or q is None or loop.is_closed():
        return
    msg = {"table": table, "event": event, "new": new, "old": old}
    try:
        loop.call_soon_threadsafe(q.put_nowait, msg)
    except RuntimeError:
        # loop shut down between the check and the hand-off
        logger.debug("change event dropped", extra={"table": table, "event": event})


_PRIVATE_COLUMNS = {"push_token", "password_hash"}


def publish_row(event: str, obj: Any, old: Optional[Dict[str, Any]] = None):
    """Publish an INSERT/UPDATE for a committed ORM row."""
    new = {k: v for k, v in row_dict(obj).items() if k not in _PRIVATE_COLUMNS}
    publish(obj.__tablename__, event, new=new, old=old)


def publish_delete(table: str, snapshot: Dict[str, Any]):
    publish(table, "DELETE", old={k: v for k, v in snapshot.items() if k not in _PRIVATE_COLUMNS})


async def broadcast(msg: Dict[str, Any]) -> None:
    text = json.dumps(msg)
    for sub in list(subscribers):
        if not sub.matches(msg):
            continue
        try:
            await sub.ws.send_text(text)
        except Exception:
            logger.info("dropping dead subscriber", extra={"table": sub.table})
            if sub in subscribers:
                subscribers.remove(sub)


async def drain_queue_forever():
    while True:
        msg = await queue.get()
        await broadcast(msg)


@router_ws.websocket("/realtime")
async def realtime_ws(ws: WebSocket):
    await ws.accept()
    table = ws.query_params.get("table") or ""
    try:
        column, value = parse_filter(table, ws.query_params.get("filter"))
    except ValueError as e:
        await ws.send_json({"event": "ERROR", "detail": str(e)})
        await ws.close(code=4400)
        return
    sub = Subscription(ws, table, column, value)
    subscribers.append(sub)
    await ws.send_json({"event": "SUBSCRIBED", "table": table, "filter": ws.query_params.get("filter")})
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if sub in subscribers:
            subscribers.remove(sub)
