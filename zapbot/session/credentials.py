"""
会话凭证存储 - 每个会话一份传输层凭证（配对后的密钥材料）。

凭证以 JSON 文件保存在 ~/.zapbot/credentials/<session_id>.json，
重连时原样交回 Transport.open()，"遗忘会话"时连同文件一起删除。
"""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from zapbot.errors import StoreError
from zapbot.utils.helpers import ensure_dir, safe_filename


class CredentialStore:
    """
    按会话保存传输凭证的文件存储。

    属性:
        root: 凭证目录
    """

    def __init__(self, root: Path):
        self.root = ensure_dir(root)

    def _path(self, session_id: str) -> Path:
        return self.root / f"{safe_filename(session_id)}.json"

    def load(self, session_id: str) -> dict[str, Any] | None:
        """读取凭证；不存在或文件损坏时返回 None（损坏时按首次配对处理）。"""
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load credentials for session {session_id}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def save(self, session_id: str, creds: dict[str, Any]) -> None:
        """整体覆盖写入凭证（先写临时文件再原子替换）。"""
        path = self._path(session_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(creds), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Failed to save credentials for session {session_id}: {e}") from e

    def wipe(self, session_id: str) -> bool:
        """删除凭证文件，返回是否真的删除了文件。"""
        path = self._path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()
