"""DotDict - A dict subclass that supports both dot notation and bracket notation.

Allows accessing dict keys as attributes:
    result = DotDict({"call_id": "call-1", "success": True})
    result.call_id  # "call-1"
    result["success"]  # True

FrozenDotDict is the read-only variant used for requests the engine has accepted.
"""

from __future__ import annotations

import copy
from typing import Any, NoReturn


class DotDict(dict):
    """Dict that supports attribute access (dot notation) in addition to bracket notation."""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            # Recursively wrap nested dicts
            if isinstance(value, dict) and not isinstance(value, DotDict):
                value = DotDict(value)
                self[key] = value
            return value
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{key}'")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def __delattr__(self, key: str) -> None:
        try:
            del self[key]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{key}'")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({super().__repr__()})"

    def to_dict(self) -> dict[str, Any]:
        """Return a plain-dict deep copy, unwrapping nested DotDicts."""
        return _unwrap(self)


class FrozenDotDict(DotDict):
    """DotDict that rejects mutation after construction."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        source = dict(*args, **kwargs)
        super().__init__({key: _freeze(value) for key, value in source.items()})

    def _readonly(self, *_args: Any, **_kwargs: Any) -> NoReturn:
        raise TypeError(f"'{type(self).__name__}' is read-only")

    __setitem__ = _readonly
    __delitem__ = _readonly
    __setattr__ = _readonly
    __delattr__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly

    def __getattr__(self, key: str) -> Any:
        try:
            return self[key]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{key}'")

    def __copy__(self) -> FrozenDotDict:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> FrozenDotDict:
        return self


def _freeze(value: Any) -> Any:
    if isinstance(value, FrozenDotDict):
        return value
    if isinstance(value, dict):
        return FrozenDotDict(value)
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return copy.deepcopy(value)


def _unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _unwrap(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_unwrap(item) for item in value]
    return value
