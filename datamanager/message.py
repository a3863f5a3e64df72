"""Wire vocabulary: scalar values, labeled values and the four message kinds."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import DecodeError, EncodeError

I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

Label = str


@dataclass(frozen=True)
class Int:
    value: int


@dataclass(frozen=True)
class Float:
    value: float


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Absent:
    """No value. Serializes to JSON null."""


Value = Union[Int, Float, Text, Absent]


def value_to_json(value: Value) -> Any:
    if isinstance(value, Int):
        if isinstance(value.value, bool):
            raise EncodeError(f"boolean is not an integer: {value.value!r}")
        if not I64_MIN <= value.value <= I64_MAX:
            raise EncodeError(f"integer out of 64-bit range: {value.value}")
        return value.value
    if isinstance(value, Float):
        if not math.isfinite(value.value):
            raise EncodeError(f"non-finite float: {value.value}")
        return float(value.value)
    if isinstance(value, Text):
        return value.value
    if isinstance(value, Absent):
        return None
    raise EncodeError(f"not a value: {value!r}")


def value_from_json(raw: Any) -> Value:
    """Pick the value variant from the shape of a parsed JSON literal.

    Tried in order: integer, float, string, null. bool is a subclass of int in
    Python, so JSON true/false has to be turned away before the integer test.
    """
    if isinstance(raw, bool):
        raise DecodeError(f"boolean is not a value: {raw!r}")
    if isinstance(raw, int):
        if I64_MIN <= raw <= I64_MAX:
            return Int(raw)
        try:
            return Float(float(raw))
        except OverflowError:
            raise DecodeError(f"number out of range: {raw}") from None
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise DecodeError(f"non-finite number: {raw}")
        return Float(raw)
    if isinstance(raw, str):
        return Text(_utf8(raw, "text"))
    if raw is None:
        return Absent()
    raise DecodeError(f"unsupported value type: {type(raw).__name__}")


def _utf8(raw: str, what: str) -> str:
    # json.loads lets lone surrogates through from \uXXXX escapes
    try:
        raw.encode("utf-8")
    except UnicodeEncodeError:
        raise DecodeError(f"{what} is not valid unicode: {raw!r}") from None
    return raw


class Status(str, Enum):
    OK = "OK"
    INVALID_REQUEST = "InvalidRequest"
    NOT_FOUND = "NotFound"


@dataclass(frozen=True)
class LabeledValue:
    label: Label
    value: Value

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "value": value_to_json(self.value)}

    @classmethod
    def from_dict(cls, data: Any) -> LabeledValue:
        if not isinstance(data, dict):
            raise DecodeError("labeled value must be an object")
        if "value" not in data:
            raise DecodeError("labeled value is missing 'value'")
        return cls(label=_label(data.get("label")), value=value_from_json(data["value"]))


def _label(raw: Any) -> Label:
    if not isinstance(raw, str):
        raise DecodeError(f"label must be a string, got {type(raw).__name__}")
    return _utf8(raw, "label")


def _tag(data: Dict[str, Any]) -> Optional[str]:
    tag = data.get("tag")
    if tag is not None and not isinstance(tag, str):
        raise DecodeError("tag must be a string")
    return tag if tag is None else _utf8(tag, "tag")


def _list(data: Dict[str, Any], key: str) -> List[Any]:
    if key not in data:
        raise DecodeError(f"missing field '{key}'")
    items = data[key]
    if not isinstance(items, list):
        raise DecodeError(f"'{key}' must be an array")
    return items


def _status(data: Dict[str, Any]) -> Status:
    try:
        return Status(data["status"])
    except KeyError:
        raise DecodeError("missing field 'status'") from None
    except ValueError:
        raise DecodeError(f"unknown status: {data['status']!r}") from None


def _head(msg: Any) -> Dict[str, Any]:
    d: Dict[str, Any] = {"command": type(msg).__name__}
    if msg.tag is not None:
        d["tag"] = msg.tag
    return d


@dataclass
class GetDataRequest:
    params: List[Label] = field(default_factory=list)
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = _head(self)
        d["params"] = list(self.params)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GetDataRequest:
        return cls(tag=_tag(data), params=[_label(p) for p in _list(data, "params")])


@dataclass
class GetDataResponse:
    status: Status = Status.OK
    results: List[LabeledValue] = field(default_factory=list)
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = _head(self)
        d["status"] = self.status.value
        d["results"] = [r.to_dict() for r in self.results]
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GetDataResponse:
        return cls(
            tag=_tag(data),
            status=_status(data),
            results=[LabeledValue.from_dict(r) for r in _list(data, "results")],
        )


@dataclass
class SetDataRequest:
    params: List[LabeledValue] = field(default_factory=list)
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = _head(self)
        d["params"] = [p.to_dict() for p in self.params]
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SetDataRequest:
        return cls(tag=_tag(data), params=[LabeledValue.from_dict(p) for p in _list(data, "params")])


@dataclass
class SetDataResponse:
    status: Status = Status.OK
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = _head(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SetDataResponse:
        return cls(tag=_tag(data), status=_status(data))


Message = Union[GetDataRequest, GetDataResponse, SetDataRequest, SetDataResponse]

COMMANDS = {
    cls.__name__: cls
    for cls in (GetDataRequest, GetDataResponse, SetDataRequest, SetDataResponse)
}


def message_to_dict(msg: Message) -> Dict[str, Any]:
    if type(msg).__name__ not in COMMANDS:
        raise EncodeError(f"not a message: {msg!r}")
    return msg.to_dict()


def message_from_dict(data: Any) -> Message:
    if not isinstance(data, dict):
        raise DecodeError("message must be a JSON object")
    command = data.get("command")
    if not isinstance(command, str):
        raise DecodeError("missing field 'command'")
    cls = COMMANDS.get(command)
    if cls is None:
        raise DecodeError(f"unknown command: {command!r}")
    return cls.from_dict(data)
