"""
Position ledger: the bot's only persisted state.

A single JSON document per bot instance. Writes are partial (only the
named fields change) and atomic (temp file + rename).
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

NO_POSITION = "none"


@dataclass(frozen=True)
class PositionRecord:
    position_id: str = NO_POSITION
    last_known_stable_balance: int = 0
    standby: bool = False
    standby_reference_price: float = 0.0
    circuit_breaker: bool = False
    circuit_breaker_exit_price: float = 0.0
    updated_at: str | None = None

    @property
    def has_position(self) -> bool:
        return self.position_id != NO_POSITION

    @property
    def token_id(self) -> int:
        return int(self.position_id)


_FIELD_NAMES = {f.name for f in fields(PositionRecord)}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"not a boolean: {value!r}")


def _as_handle(value) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValueError(f"not a position handle: {value!r}")
    return str(value)


# Older state files store numbers as strings
_COERCE = {
    "position_id": _as_handle,
    "last_known_stable_balance": int,
    "standby": _as_bool,
    "standby_reference_price": float,
    "circuit_breaker": _as_bool,
    "circuit_breaker_exit_price": float,
    "updated_at": str,
}


class PositionLedger:
    def __init__(self, state_file):
        self.state_file = Path(state_file)

    def _read_document(self) -> dict:
        if not self.state_file.exists():
            return {}
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state root is not an object")
            return data
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.error("[System] Corrupt state file %s (%s). Resetting.", self.state_file, e)
            return {}

    def load(self) -> PositionRecord:
        """Read the stored record. Unreadable or mistyped state loads as a fresh one."""
        data = self._read_document()
        try:
            known = {
                k: _COERCE[k](v) for k, v in data.items() if k in _COERCE and v is not None
            }
        except (TypeError, ValueError) as e:
            logger.error("[System] Bad value in state file %s (%s). Resetting.", self.state_file, e)
            return PositionRecord()
        record = PositionRecord(**known)
        if record.position_id in ("", "0"):
            record = replace(record, position_id=NO_POSITION)
        return replace(record, position_id=str(record.position_id))

    def save(self, **updates) -> PositionRecord:
        """Merge `updates` into the stored record and write it back."""
        unknown = set(updates) - _FIELD_NAMES
        if unknown:
            raise ValueError(f"unknown ledger fields: {sorted(unknown)}")
        if "position_id" in updates:
            updates["position_id"] = str(updates["position_id"])

        record = replace(self.load(), **updates)
        record = replace(record, updated_at=datetime.now(timezone.utc).isoformat())

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.state_file.parent, prefix=".state-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(record), f, indent=2)
            os.replace(tmp_path, self.state_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info("[System] State saved: %s", ", ".join(f"{k}={v}" for k, v in updates.items()))
        return record
