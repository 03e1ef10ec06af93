#!/usr/bin/env python3
"""Reference backing process for the bottle editor.

Serves the current bottle document, then waits for exactly one outcome: a saved document
(POST /) or a discard (POST /discard). Either one stops the server.

Run:
  python3 code/tools/bottle/backing_local.py --bottle entry.yaml
"""

import argparse
import json
import threading
from collections import OrderedDict
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import urlparse

from bottle_common import API_VERSION, KIND, dump_json_yaml, ensure_parent, is_bottle_document, load_json_yaml, send_json


class BackingApp:
    def __init__(self, bottle_path: Path):
        self.bottle_path = bottle_path
        self.outcome = ""

    @property
    def bottle(self) -> dict:
        data = load_json_yaml(self.bottle_path)
        if not data:
            return OrderedDict([("kind", KIND), ("apiVersion", API_VERSION)])
        return data

    def save(self, doc: dict) -> None:
        dump_json_yaml(self.bottle_path, doc)


class BackingHandler(BaseHTTPRequestHandler):
    app: BackingApp = None

    def _send_json(self, payload: dict, status: int = 200):
        send_json(self, payload, status)

    def _finish(self, outcome: str) -> None:
        self.app.outcome = outcome
        threading.Thread(target=self.server.shutdown, daemon=True).start()

    def do_GET(self):
        if urlparse(self.path).path == "/":
            self._send_json(self.app.bottle)
            return
        self._send_json({"error": "Not found"}, 404)

    def do_POST(self):
        path = urlparse(self.path).path
        n = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(n) if n > 0 else b""

        if path == "/discard":
            self._send_json({"ok": True, "message": "Changes discarded"})
            self._finish("discarded")
            return

        if path == "/":
            try:
                doc = json.loads(raw.decode("utf-8"))
            except ValueError as exc:
                self._send_json({"error": f"could not read bottle document: {exc}"}, 400)
                return
            if not is_bottle_document(doc):
                self._send_json({"error": f"expected kind {KIND} and apiVersion {API_VERSION}"}, 400)
                return
            self.app.save(doc)
            self._send_json({"ok": True, "message": "Bottle saved"})
            self._finish("saved")
            return

        self._send_json({"error": "Not found"}, 404)


def make_backing_server(app: BackingApp, host: str = "127.0.0.1", port: int = 0) -> ThreadingHTTPServer:
    handler = type("BoundBackingHandler", (BackingHandler,), {"app": app})
    return ThreadingHTTPServer((host, port), handler)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--bottle", default="entry.yaml", help="Bottle document to serve and overwrite on save")
    parser.add_argument("--url-file", default=None, help="Write the served address to this file")
    args = parser.parse_args()

    app = BackingApp(Path(args.bottle))
    httpd = make_backing_server(app, args.host, args.port)
    url = f"http://{args.host}:{httpd.server_address[1]}/"
    if args.url_file:
        url_path = Path(args.url_file)
        ensure_parent(url_path)
        url_path.write_text(url + "\n", encoding="utf-8")

    print(f"Serving bottle backend at address {url}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()

    if app.outcome == "saved":
        print(f"Bottle saved to {app.bottle_path}")
    elif app.outcome == "discarded":
        print("Changes discarded")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
