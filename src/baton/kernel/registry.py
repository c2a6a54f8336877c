from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..paths import ensure_home, registry_path
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso


@dataclass
class Registry:
    """Index of session id -> workdir. Session documents remain the truth."""

    path: Path
    doc: Dict[str, Any]

    @property
    def sessions(self) -> Dict[str, Any]:
        d = self.doc.setdefault("sessions", {})
        return d if isinstance(d, dict) else {}

    def save(self) -> None:
        self.doc.setdefault("v", 1)
        self.doc["updated_at"] = utc_now_iso()
        atomic_write_json(self.path, self.doc)

    def workdir_for(self, session_id: str) -> Optional[str]:
        meta = self.sessions.get(session_id)
        if not isinstance(meta, dict):
            return None
        cwd = str(meta.get("cwd") or "").strip()
        return cwd or None

    def register(self, session_id: str, workdir: str) -> None:
        now = utc_now_iso()
        meta = self.sessions.get(session_id)
        created_at = meta.get("created_at") if isinstance(meta, dict) else None
        self.sessions[session_id] = {"cwd": workdir, "created_at": created_at or now, "updated_at": now}
        self.save()

    def forget(self, session_id: str) -> None:
        if self.sessions.pop(session_id, None) is not None:
            self.save()

    def session_ids(self) -> List[str]:
        return sorted(self.sessions.keys())

    def workdirs(self) -> List[str]:
        seen: List[str] = []
        for sid in self.session_ids():
            cwd = self.workdir_for(sid)
            if cwd and cwd not in seen:
                seen.append(cwd)
        return seen


def load_registry() -> Registry:
    ensure_home()
    path = registry_path()
    doc = read_json(path)
    if not doc:
        doc = {"v": 1, "created_at": utc_now_iso(), "updated_at": utc_now_iso(), "sessions": {}}
        atomic_write_json(path, doc)
    return Registry(path=path, doc=doc)
