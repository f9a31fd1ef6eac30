import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import PersistenceAdapter
from chat_core.domain.exceptions import PersistenceError
from chat_core.domain.models import ChatMessage, ConversationSummary


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonPersistenceAdapter(PersistenceAdapter):
    """基于本地目录的持久化实现。

    目录结构：{root}/conversations/{conversation_id}/meta.json + messages.jsonl。
    写入失败统一抛出 PersistenceError，由会话引擎记录日志后吞掉。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def save_conversation(self, conversation_id: str, title: str, model: Optional[str] = None) -> Dict[str, Any]:
        """插入或更新会话元数据（upsert）。"""

        cdir = self._conv_root / conversation_id
        now = datetime.now(timezone.utc)
        existing = self._read_meta(cdir) if (cdir / "meta.json").exists() else None
        obj = {
            "id": conversation_id,
            "title": title,
            "model": model if model is not None else (existing or {}).get("model"),
            "created_at": (existing or {}).get("created_at") or _iso(now),
            "updated_at": _iso(now),
        }
        try:
            cdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        self._write_meta(cdir, obj)
        return obj

    def save(self, conversation_id: str, message: ChatMessage) -> Dict[str, Any]:
        cdir = self._conv_root / conversation_id
        meta = self._read_meta(cdir)
        now = datetime.now(timezone.utc)
        row = {
            "id": f"m-{uuid4().hex}",
            "conversation_id": conversation_id,
            **message.to_payload(),
            "created_at": _iso(now),
        }
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False) + "\n")
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        meta["updated_at"] = _iso(now)
        self._write_meta(cdir, meta)
        return row

    def truncate_messages(self, conversation_id: str, keep: int) -> None:
        """删除前 keep 条之后的所有消息，使存储与编辑后的内存会话一致。"""

        cdir = self._conv_root / conversation_id
        meta = self._read_meta(cdir)
        rows = self._read_rows(cdir)[:max(keep, 0)]
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        try:
            tmp_path.write_text(
                "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in rows),
                encoding="utf-8",
            )
            os.replace(tmp_path, cdir / "messages.jsonl")
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        meta["updated_at"] = _iso(datetime.now(timezone.utc))
        self._write_meta(cdir, meta)

    def load(self, conversation_id: str) -> List[ChatMessage]:
        return [ChatMessage.from_payload(r) for r in self._read_rows(self._conv_root / conversation_id)]

    def load_all(self) -> List[ConversationSummary]:
        items: List[ConversationSummary] = []
        for cdir in self._conv_root.glob("*/"):
            if not (cdir / "meta.json").exists():
                continue
            try:
                data = self._read_meta(cdir)
                items.append(
                    ConversationSummary(
                        id=data["id"],
                        title=data.get("title") or "",
                        model=data.get("model"),
                        updated_at=_parse_ts(data["updated_at"]),
                    )
                )
            except (PersistenceError, KeyError, ValueError):
                continue
        items.sort(key=lambda s: s.updated_at, reverse=True)
        return items

    def delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise PersistenceError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e))

    def _read_rows(self, cdir: Path) -> List[Dict[str, Any]]:
        msgs_path = cdir / "messages.jsonl"
        if not msgs_path.exists():
            return []
        rows: List[Dict[str, Any]] = []
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        for line in lines:
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        rows.sort(key=lambda r: str(r.get("created_at", "")))
        return rows

    def _read_meta(self, cdir: Path) -> Dict[str, Any]:
        meta_path = cdir / "meta.json"
        if not meta_path.exists():
            # 对应外键约束：消息必须挂在已保存的会话下
            raise PersistenceError(code="CONVERSATION_NOT_FOUND", message=cdir.name, http_status=404)
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))

    def _write_meta(self, cdir: Path, obj: Dict[str, Any]) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
