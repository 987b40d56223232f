"""Wire messages exchanged with attached session clients.

Every message is a JSON object whose ``type`` field selects one of the
dataclasses below.  Server messages are stamped with ``sessionId`` and a
per-session ``seq`` by the fan-out channel before they are sent.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from errors import ProtocolError

FILE_ACTIONS = ("created", "modified", "deleted")


def jdump(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


# ---------- server -> client ----------


@dataclass(frozen=True)
class StatusMessage:
    running: bool
    status: str
    error: Optional[str] = None

    type = "status"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "running": self.running, "status": self.status}
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class OutputMessage:
    data: str

    type = "output"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass(frozen=True)
class ExitMessage:
    exit_code: int

    type = "exit"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "exitCode": self.exit_code}


@dataclass(frozen=True)
class FileChangeMessage:
    action: str
    file_path: str

    type = "file-change"

    def __post_init__(self) -> None:
        if self.action not in FILE_ACTIONS:
            raise ValueError(f"invalid file-change action: {self.action!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "action": self.action, "filePath": self.file_path}


@dataclass(frozen=True)
class ProgressMessage:
    progress: int

    type = "progress"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "progress": self.progress}


@dataclass(frozen=True)
class TestResultMessage:
    passed: int
    failed: int
    total: int

    type = "test-result"
    __test__ = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "passed": self.passed, "failed": self.failed, "total": self.total}


ServerMessage = Union[
    StatusMessage, OutputMessage, ExitMessage, FileChangeMessage, ProgressMessage, TestResultMessage
]


def encode_server_message(message: ServerMessage, session_id: str, seq: int) -> Dict[str, Any]:
    data = message.to_dict()
    data["sessionId"] = session_id
    data["seq"] = seq
    return data


# ---------- client -> server ----------


@dataclass(frozen=True)
class InputMessage:
    data: str

    type = "input"


@dataclass(frozen=True)
class ResizeMessage:
    cols: int
    rows: int

    type = "resize"


ClientMessage = Union[InputMessage, ResizeMessage]


def _positive_int(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"resize.{key} must be a number")
    number = int(value)
    if number <= 0 or number > 10000:
        raise ProtocolError(f"resize.{key} out of range: {value}")
    return number


def decode_client_message(raw: Union[str, bytes, Dict[str, Any]]) -> ClientMessage:
    """Decode a client frame, raising ProtocolError for anything unrecognised."""
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError(f"invalid JSON frame: {exc}") from None
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise ProtocolError("frame must be a JSON object")

    kind = payload.get("type")
    if kind == InputMessage.type:
        data = payload.get("data")
        if not isinstance(data, str):
            raise ProtocolError("input.data must be a string")
        return InputMessage(data=data)
    if kind == ResizeMessage.type:
        return ResizeMessage(cols=_positive_int(payload, "cols"), rows=_positive_int(payload, "rows"))
    raise ProtocolError(f"unknown message type: {kind!r}")
