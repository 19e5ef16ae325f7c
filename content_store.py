"""Key -> blob store for question images, kept on local disk."""

import json
import os
import re
import uuid
from pathlib import Path
from typing import Optional, Tuple

_KEY_RE = re.compile(r"^[0-9a-f]{32}$")
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ContentStore:
    def __init__(self, root: str, max_bytes: int):
        self.root = Path(root)
        self.max_bytes = int(max_bytes)
        os.makedirs(self.root, exist_ok=True)

    @staticmethod
    def valid_key(key: Optional[str]) -> bool:
        return bool(key) and bool(_KEY_RE.match(str(key)))

    def _paths(self, key: str) -> Tuple[Path, Path]:
        return self.root / key, self.root / f"{key}.meta.json"

    def put(self, data: bytes, content_type: Optional[str] = None) -> str:
        if len(data) > self.max_bytes:
            raise ValueError(f"blob exceeds {self.max_bytes} bytes")
        key = uuid.uuid4().hex
        blob_path, meta_path = self._paths(key)
        with blob_path.open("wb") as fh:
            fh.write(data)
        with meta_path.open("w", encoding="utf-8") as fh:
            json.dump({"content_type": content_type or DEFAULT_CONTENT_TYPE, "size": len(data)}, fh)
        return key

    def get(self, key: str) -> Optional[Tuple[bytes, str]]:
        """(data, content_type), or None when the key is unknown."""
        if not self.valid_key(key):
            return None
        blob_path, meta_path = self._paths(key)
        if not blob_path.is_file():
            return None
        content_type = DEFAULT_CONTENT_TYPE
        try:
            with meta_path.open("r", encoding="utf-8") as fh:
                content_type = json.load(fh).get("content_type") or DEFAULT_CONTENT_TYPE
        except (OSError, ValueError) as e:
            print(f"[content] metadata unreadable for {key}: {e}")
        return blob_path.read_bytes(), content_type

    def delete(self, key: str) -> bool:
        if not self.valid_key(key):
            return False
        removed = False
        for p in self._paths(key):
            if p.exists():
                p.unlink()
                removed = True
        return removed
