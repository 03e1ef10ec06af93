#!/usr/bin/env python3
"""Common utilities for bottle draft tooling."""

import json
import re
from pathlib import Path
from typing import Tuple

KIND = "Bottle"
API_VERSION = "data.act3-ace.io/v1"

COLLECTION_NAMES = ["authors", "sources", "labels", "annotations", "metrics", "parts"]


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


def render_token(key: str, value: str = "", keep_empty: bool = False) -> str:
    """Render a `key` or `key=value` token.

    Part labels always carry the separator (`keep_empty=True`), top-level labels drop it
    when the value is empty.
    """
    if value or keep_empty:
        return f"{key}={value}"
    return key


def parse_token(text: str) -> Tuple[str, str]:
    text = (text or "").strip()
    if "=" not in text:
        return text, ""
    key, value = text.split("=", 1)
    return key, value


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def load_json_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return {}
    return json.loads(text)


def dump_json_yaml(path: Path, payload: dict) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=False) + "\n", encoding="utf-8")


def is_bottle_document(payload) -> bool:
    return isinstance(payload, dict) and payload.get("kind") == KIND and payload.get("apiVersion") == API_VERSION


def send_json(handler, payload: dict, status: int = 200) -> None:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(data)))
    handler.end_headers()
    handler.wfile.write(data)
