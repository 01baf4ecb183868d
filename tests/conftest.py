import asyncio
import sqlite3
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from bearbridge.callback.listener import CallbackListener


def url_query(url: str) -> Dict[str, str]:
    """Flatten an invocation URL's query into single values."""
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


class CallbackInvoker:
    """
    Stands in for the OS opener: answers the exchange over HTTP the way Bear
    would, on x-success or x-error, optionally after a delay.
    """

    def __init__(
        self,
        payload: Union[Dict[str, Any], Callable[[str], Dict[str, Any]], None] = None,
        *,
        channel: str = "success",
        delay: float = 0.0,
        respond: bool = True,
    ):
        self.payload = payload if payload is not None else {}
        self.channel = channel
        self.delay = delay
        self.respond = respond
        self.urls: List[str] = []
        self.tasks: List[asyncio.Task] = []
        self.delivery_errors: List[Exception] = []

    async def invoke(self, url: str) -> None:
        self.urls.append(url)
        if not self.respond:
            return
        query = url_query(url)
        target = query["x-success"] if self.channel == "success" else query["x-error"]
        payload = self.payload(url) if callable(self.payload) else self.payload
        if self.delay:
            self.tasks.append(asyncio.create_task(self._deliver(target, payload, self.delay)))
        else:
            await self._deliver(target, payload, 0.0)

    async def _deliver(self, target: str, payload: Dict[str, Any], delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                await client.get(target, params=payload)
        except httpx.TransportError as exc:
            self.delivery_errors.append(exc)


class CountingListenerFactory:
    """Listener factory that remembers every listener it built."""

    def __init__(self):
        self.listeners: List[CallbackListener] = []

    def __call__(self) -> CallbackListener:
        listener = CallbackListener(shutdown_grace_seconds=0.2)
        self.listeners.append(listener)
        return listener


@pytest.fixture
def listener_factory():
    return CountingListenerFactory()


BEAR_SCHEMA = """
CREATE TABLE ZSFNOTE (
    Z_PK INTEGER PRIMARY KEY,
    ZUNIQUEIDENTIFIER TEXT,
    ZTITLE TEXT,
    ZTEXT TEXT,
    ZTRASHED INTEGER DEFAULT 0,
    ZCREATIONDATE REAL
);
CREATE TABLE ZSFNOTETAG (
    Z_PK INTEGER PRIMARY KEY,
    ZTITLE TEXT
);
CREATE TABLE Z_5TAGS (
    Z_5NOTES INTEGER,
    Z_13TAGS INTEGER
);
"""

NOTES = [
    (1, "NOTE-1", "Meeting Notes", "# Meeting Notes\n## Agenda\nBudget review\nHiring\n## Actions\nSend minutes", 0, 100.0),
    (2, "NOTE-2", "Groceries", "# Groceries\nmilk, eggs", 0, 300.0),
    (3, "NOTE-3", "Old plan", "# Old plan\nbudget draft", 1, 200.0),
    (4, "NOTE-4", "Roadmap", "# Roadmap\nQ3 budget themes", 0, 400.0),
]

TAGS = [(1, "work"), (2, "home"), (3, "archive")]

NOTE_TAGS = [(1, 1), (3, 1), (4, 1), (2, 2)]


def build_bear_database(path) -> None:
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(BEAR_SCHEMA)
        conn.executemany("INSERT INTO ZSFNOTE VALUES (?, ?, ?, ?, ?, ?)", NOTES)
        conn.executemany("INSERT INTO ZSFNOTETAG VALUES (?, ?)", TAGS)
        conn.executemany("INSERT INTO Z_5TAGS VALUES (?, ?)", NOTE_TAGS)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def bear_db_path(tmp_path):
    path = tmp_path / "database.sqlite"
    build_bear_database(path)
    return path


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """Clear BearBridge environment and point the config dir somewhere empty."""
    for name in (
        "BEAR_BRIDGE_TOKEN",
        "BEAR_API_TOKEN",
        "BEAR_BRIDGE_TIMEOUT",
        "BEAR_BRIDGE_CALLBACK_HOST",
        "BEAR_BRIDGE_PAYLOAD_WARN_BYTES",
        "BEAR_BRIDGE_OPEN_COMMAND",
        "BEAR_BRIDGE_DB_PATH",
        "BEAR_BRIDGE_LOG_LEVEL",
        "BEAR_BRIDGE_LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BEAR_BRIDGE_CONFIG_DIR", str(tmp_path / "config"))
    return tmp_path


def assert_port_closed(endpoint: Optional[str]) -> None:
    assert endpoint is not None
    with pytest.raises(httpx.ConnectError):
        httpx.get(f"{endpoint}/success", timeout=1.0, trust_env=False)
