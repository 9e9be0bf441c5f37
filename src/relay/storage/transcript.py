from __future__ import annotations
import json
import datetime as dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from relay.core.types import ChatMessage, Role

Status = Literal['complete', 'partial']

logger = logging.getLogger(__name__)


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class Transcript:
    """
    Conversation log, one JSON record per line.
    - root_dir given: file-backed at <root_dir>/<session_id>.jsonl, resumed if it exists
    - root_dir None: records kept in memory only
    - first record is a header (meta), followed by message records with a status
      ('partial' marks a reply that was cut short)
    """

    def __init__(
        self,
        system_prompt: str,
        session_id: Optional[str] = None,
        root_dir: Optional[Path] = None,
        header_meta: Optional[Dict[str, Any]] = None,
    ):
        self._system_prompt = system_prompt
        self._root_dir = Path(root_dir) if root_dir else None
        self._session_id = session_id or dt.datetime.now(dt.timezone.utc).strftime('%Y%m%d-%H%M%S')
        self._header_meta = header_meta or {}
        self._messages: List[ChatMessage] = []
        self._records: List[Dict[str, Any]] = []
        self._path: Optional[Path] = None

        if self._root_dir:
            self._root_dir.mkdir(parents=True, exist_ok=True)
            self._path = self._root_dir / f'{self._session_id}.jsonl'
            if self._path.exists() and self._path.stat().st_size > 0:
                self._load_from_file()
                if not self._messages or self._messages[0].role != 'system':
                    self._messages.insert(0, ChatMessage(role='system', content=system_prompt))
                return

        self._write({'type': 'header', 'ts': _now(), 'meta': self._header_meta})
        self.append_message('system', system_prompt)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def records(self) -> List[Dict[str, Any]]:
        """Every record written by this instance (resumed records are not re-read)."""
        return list(self._records)

    def append_message(self, role: Role, content: str, status: Status = 'complete') -> None:
        ts = dt.datetime.now(dt.timezone.utc)
        self._write({
            'type': 'message',
            'ts': ts.isoformat(),
            'role': role,
            'content': content,
            'status': status,
        })
        self._messages.append(ChatMessage(role=role, content=content, timestamp=ts))

    # Internal helpers

    def _write(self, rec: Dict[str, Any]) -> None:
        self._records.append(rec)
        if self._path is not None:
            with self._path.open('a', encoding='utf-8') as f:
                f.write(json.dumps(rec, ensure_ascii=False) + '\n')

    def _load_from_file(self) -> None:
        self._messages = []
        with self._path.open('r', encoding='utf-8') as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                    if not isinstance(obj, dict):
                        raise ValueError("record is not an object")
                    ts = obj.get('ts')
                    timestamp = dt.datetime.fromisoformat(ts) if isinstance(ts, str) else None
                except ValueError:
                    logger.warning("Skipping unreadable transcript line %s:%d", self._path, lineno)
                    continue
                if obj.get('type') == 'message' and obj.get('role') in ('system', 'user', 'assistant', 'tool'):
                    self._messages.append(ChatMessage(
                        role=obj['role'],
                        content=str(obj.get('content', '')),
                        timestamp=timestamp,
                    ))
