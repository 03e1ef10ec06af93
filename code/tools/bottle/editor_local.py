#!/usr/bin/env python3
"""Local web UI for editing a bottle draft before handing it back to its backing process.

Run:
  python3 code/tools/bottle/editor_local.py --backing-url http://127.0.0.1:8765/
Then open http://127.0.0.1:8766
"""

import argparse
import json
import sys
import threading
import time
import webbrowser
from collections import OrderedDict
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import requests

from bottle_common import load_json_yaml, normalize_whitespace, parse_token, send_json
from build_bottle_document import assemble
from draft_collections import Collection, CollectionError, Draft
from session_protocol import Session, SubmissionError

# Submit buttons share one form; the pressed button's label picks the action.
SUBMIT_ACTIONS = OrderedDict(
    [
        ("ADD AUTHOR", ("authors", "add")),
        ("ADD SOURCE", ("sources", "add")),
        ("ADD LABEL", ("labels", "add")),
        ("ADD ANNOTATION", ("annotations", "add")),
        ("ADD METRIC", ("metrics", "add")),
        ("ADD PART", ("parts", "add_label")),
    ]
)
ENTRY_OPS = {"edit", "commit_edit", "cancel_edit", "delete"}


class SessionClosed(Exception):
    pass


def route_submit(submitter: str) -> Optional[Tuple[str, str]]:
    label = normalize_whitespace(submitter).upper()
    for marker, action in SUBMIT_ACTIONS.items():
        if marker in label:
            return action
    return None


def parse_index(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise CollectionError(f"invalid index: {text}") from None


def resolve_collection(draft: Draft, segments: List[str]) -> Tuple[Collection, List[str]]:
    collection = draft.collection(segments[0])
    rest = segments[1:]
    if segments[0] == "parts" and len(rest) >= 2 and rest[1] == "labels":
        collection = draft.parts.part_labels(parse_index(rest[0]))
        rest = rest[2:]
    return collection, rest


def apply_inputs(draft: Draft, inputs: dict) -> None:
    for name, values in (inputs or {}).items():
        if not isinstance(values, dict):
            continue
        if name == "parts.label":
            draft.parts.set_label_inputs(values)
        else:
            draft.collection(name).set_inputs(values)


def apply_edit_inputs(draft: Draft, edits: dict) -> None:
    """Copy unsaved text of open edit rows, keyed by edit prefix, into their entries."""
    edits = edits or {}
    nested = [part.labels for part in draft.parts]
    for collection in list(draft.collections.values()) + nested:
        entry = collection.editing_entry()
        if entry is None:
            continue
        values = edits.get(collection.edit_prefix(entry))
        if isinstance(values, dict):
            collection.set_edit_inputs(entry, values)


def apply_page(draft: Draft, data: dict) -> None:
    apply_inputs(draft, data.get("inputs"))
    apply_edit_inputs(draft, data.get("edits"))


def apply_collection_op(draft: Draft, segments: List[str], data: dict) -> bool:
    """Run one collection operation addressed by an /api/<...> path. Returns False when
    field validation rejected the input."""
    if not segments:
        raise LookupError("Not found")
    if segments == ["parts", "labels", "add"]:
        return draft.parts.add_label(data.get("fields")) is not None
    if segments == ["parts", "select_all"]:
        draft.parts.set_select_all(bool(data.get("checked")))
        return True
    if len(segments) == 3 and segments[0] == "parts" and segments[2] == "select":
        draft.parts.select(parse_index(segments[1]), bool(data.get("checked")))
        return True

    collection, rest = resolve_collection(draft, segments)
    if rest == ["add"]:
        return collection.add(data.get("fields")) is not None
    if rest == ["delete_key"]:
        if "token" in data:
            key, _ = parse_token(str(data.get("token")))
        else:
            key = str(data.get("key", ""))
        collection.delete_by_key(key)
        return True
    if len(rest) == 2 and rest[1] in ENTRY_OPS:
        index = parse_index(rest[0])
        op = rest[1]
        if op == "edit":
            collection.begin_edit(index)
            return True
        if op == "commit_edit":
            return collection.commit_edit(index, data.get("fields"))
        if op == "cancel_edit":
            collection.cancel_edit(index)
            return True
        collection.delete(index)
        return True
    raise LookupError("Not found")


def fetch_bottle(http: requests.Session, backing_url: str, timeout: float = 10) -> dict:
    response = http.get(backing_url, headers={"Accept": "application/json"}, timeout=timeout)
    response.raise_for_status()
    return response.json()


HTML = """<!doctype html>
<html>
<head>
<meta charset='utf-8' />
<title>Bottle Editor</title>
<style>
body { font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, sans-serif; margin: 24px; background: #f6f7f9; }
.wrap { max-width: 1180px; margin: 0 auto; background: #fff; border: 1px solid #d9dde3; border-radius: 10px; padding: 20px; }
.grid3 { display: grid; grid-template-columns: repeat(3, minmax(0, 1fr)); gap: 18px; }
label { font-size: 12px; color: #4d5663; font-weight: 600; display: block; margin-bottom: 6px; }
input, textarea { width: 100%; padding: 8px; border: 1px solid #cfd6e0; border-radius: 6px; font-size: 13px; box-sizing: border-box; }
input[type=checkbox] { width: auto; }
table { width: 100%; border-collapse: collapse; margin-bottom: 10px; }
td, th { border-bottom: 1px solid #e4e8ee; padding: 6px; text-align: left; font-size: 13px; }
button { background: #0b57d0; color: white; border: 0; border-radius: 6px; padding: 8px 12px; font-size: 13px; cursor: pointer; }
button.icon { background: #4d5968; padding: 4px 8px; margin-left: 4px; font-size: 11px; }
button.warn { background: #a03d02; }
.pills { list-style: none; padding: 0; display: flex; flex-wrap: wrap; gap: 8px; }
.pills li { background: #e8eef8; border-radius: 14px; padding: 4px 10px; font-size: 13px; }
.edit-row { background: #fff7e0; }
.error { color: #ad2b2b; font-size: 12px; margin: 4px 0 0 0; }
.banner { background: #fbe9e7; border: 1px solid #e0a196; color: #7a1f12; padding: 10px; border-radius: 8px; margin-bottom: 12px; }
.row { margin-bottom: 16px; }
.hidden { display: none; }
</style>
</head>
<body>
<div class='wrap'>
  <h2>Bottle Editor (Local)</h2>
  <div id='submitError' class='banner hidden'></div>
  <form id='bottle-form'>
    <div class='row'><label>Description</label><textarea id='description'></textarea></div>

    <h3>Authors</h3>
    <table><thead><tr><th>Name</th><th>Email</th><th>URL</th><th></th></tr></thead><tbody id='authors-rows'></tbody></table>
    <div class='grid3 row'>
      <div><label>Name</label><input data-input='authors' data-field='name'><p class='error hidden' data-error-for='authors.name'></p></div>
      <div><label>Email</label><input data-input='authors' data-field='email'><p class='error hidden' data-error-for='authors.email'></p></div>
      <div><label>URL</label><input data-input='authors' data-field='url'><p class='error hidden' data-error-for='authors.url'></p></div>
    </div>
    <button type='submit'>ADD AUTHOR</button>

    <h3>Sources</h3>
    <table><thead><tr><th>Name</th><th>URI</th><th></th></tr></thead><tbody id='sources-rows'></tbody></table>
    <div class='grid3 row'>
      <div><label>Name</label><input data-input='sources' data-field='name'><p class='error hidden' data-error-for='sources.name'></p></div>
      <div><label>URI</label><input data-input='sources' data-field='uri'><p class='error hidden' data-error-for='sources.uri'></p></div>
    </div>
    <button type='submit'>ADD SOURCE</button>

    <h3>Labels</h3>
    <ul class='pills' id='labels-list'></ul>
    <div class='grid3 row'>
      <div><label>Key</label><input data-input='labels' data-field='key'><p class='error hidden' data-error-for='labels.key'></p></div>
      <div><label>Value</label><input data-input='labels' data-field='value'><p class='error hidden' data-error-for='labels.value'></p></div>
    </div>
    <button type='submit'>ADD LABEL</button>

    <h3>Annotations</h3>
    <ul class='pills' id='annotations-list'></ul>
    <div class='grid3 row'>
      <div><label>Key</label><input data-input='annotations' data-field='key'><p class='error hidden' data-error-for='annotations.key'></p></div>
      <div><label>Value</label><input data-input='annotations' data-field='value'><p class='error hidden' data-error-for='annotations.value'></p></div>
    </div>
    <button type='submit'>ADD ANNOTATION</button>

    <h3>Metrics</h3>
    <ul class='pills' id='metrics-list'></ul>
    <div class='grid3 row'>
      <div><label>Name</label><input data-input='metrics' data-field='name'><p class='error hidden' data-error-for='metrics.name'></p></div>
      <div><label>Value</label><input data-input='metrics' data-field='value'><p class='error hidden' data-error-for='metrics.value'></p></div>
      <div><label>Description</label><input data-input='metrics' data-field='description'><p class='error hidden' data-error-for='metrics.description'></p></div>
    </div>
    <button type='submit'>ADD METRIC</button>

    <h3>Parts</h3>
    <table>
      <thead><tr><th><input type='checkbox' id='select-all'></th><th>Digest</th><th>Name</th><th>Size</th><th></th></tr></thead>
      <tbody id='parts-rows'></tbody>
    </table>
    <div class='grid3 row'>
      <div><label>Label key</label><input data-input='parts.label' data-field='key'><p class='error hidden' data-error-for='parts.label.key'></p></div>
      <div><label>Label value</label><input data-input='parts.label' data-field='value'><p class='error hidden' data-error-for='parts.label.value'></p></div>
    </div>
    <button type='submit'>ADD PART LABEL</button>

    <hr>
    <div class='row'>
      <button type='submit'>SAVE</button>
      <button type='button' class='warn' id='discard-button'>DISCARD</button>
    </div>
  </form>
</div>

<script>
let state = null;
const PART_FIELDS = ['digest', 'name', 'size'];

function esc(s){
  return String(s == null ? '' : s).replace(/[&<>"']/g, c => ({'&':'&amp;','<':'&lt;','>':'&gt;','"':'&quot;',"'":'&#39;'}[c]));
}

async function post(path, payload){
  let r;
  try {
    r = await fetch(path, {method:'POST', headers:{'Content-Type':'application/json'}, body: JSON.stringify(Object.assign({inputs: gatherInputs(), edits: gatherEdits()}, payload))});
  } catch (err) {
    alert(`Could not reach the local editor while calling ${path}. It may have stopped.`);
    return null;
  }
  let j = {};
  try { j = await r.json(); } catch (err) { j = {error: `Unreadable response (HTTP ${r.status})`}; }
  if (j.draft) render(j);
  if (!r.ok && r.status !== 502 && j.error) alert(j.error);
  return j;
}

function gatherInputs(){
  const out = {};
  document.querySelectorAll('[data-input]').forEach(el => {
    const c = el.dataset.input;
    out[c] = out[c] || {};
    out[c][el.dataset.field] = el.value;
  });
  return out;
}

function gatherEdits(){
  const out = {};
  document.querySelectorAll('[data-edit]').forEach(el => {
    const id = el.dataset.edit;
    const cut = id.lastIndexOf('.');
    const prefix = id.slice(0, cut);
    out[prefix] = out[prefix] || {};
    out[prefix][id.slice(cut + 1)] = el.value;
  });
  return out;
}

function controlsHtml(e){
  return Object.entries(e.controls).map(([name, url]) =>
    `<button type='button' class='icon' data-control='${esc(url)}'>${esc(name)}</button>`).join('');
}

function editCells(e, fields){
  return fields.map(f => `<td><input data-edit='${esc(e.edit_prefix)}.${f}' value='${esc(e.edit_inputs[f])}'>` +
    `<p class='error hidden' data-error-for='${esc(e.edit_prefix)}.${f}'></p></td>`).join('');
}

function textCells(e, fields){
  return fields.map(f => `<td>${esc(e.fields[f])}</td>`).join('');
}

function rowsHtml(c){
  return c.entries.map(e => `<tr class='${e.editing ? 'edit-row' : ''}'>` +
    (e.editing ? editCells(e, c.fields) : textCells(e, c.fields)) + `<td>${controlsHtml(e)}</td></tr>`).join('');
}

function pillsHtml(c){
  return c.entries.map(e => e.editing
    ? `<li class='edit-row'><table><tr>${editCells(e, c.fields)}</tr></table>${controlsHtml(e)}</li>`
    : `<li title='${esc(e.tooltip || '')}'>${esc(e.token)}${controlsHtml(e)}</li>`).join('');
}

function partsHtml(c){
  return c.entries.map(e => `<tr class='${e.editing ? 'edit-row' : ''}'>` +
    `<td><input type='checkbox' data-select='${e.index}' ${e.selected ? 'checked' : ''}></td>` +
    (e.editing ? editCells(e, PART_FIELDS) : textCells(e, PART_FIELDS)) + `<td>${controlsHtml(e)}</td></tr>` +
    `<tr><td colspan='5'><ul class='pills'>${pillsHtml(e.labels)}</ul></td></tr>`).join('');
}

function showErrors(errors){
  document.querySelectorAll('[data-error-for]').forEach(p => {
    const err = errors[p.dataset.errorFor];
    p.textContent = err ? err.message : '';
    p.classList.toggle('hidden', !err);
  });
}

function render(j){
  state = j;
  const cols = j.draft.collections;
  const desc = document.getElementById('description');
  if (document.activeElement !== desc) desc.value = j.draft.description;
  document.querySelectorAll('[data-input]').forEach(el => {
    const c = el.dataset.input;
    const src = c === 'parts.label' ? cols.parts.label_inputs : cols[c].inputs;
    el.value = src[el.dataset.field] || '';
  });
  document.getElementById('authors-rows').innerHTML = rowsHtml(cols.authors);
  document.getElementById('sources-rows').innerHTML = rowsHtml(cols.sources);
  for (const name of ['labels', 'annotations', 'metrics']) {
    document.getElementById(name + '-list').innerHTML = pillsHtml(cols[name]);
  }
  document.getElementById('select-all').checked = cols.parts.select_all;
  document.getElementById('parts-rows').innerHTML = partsHtml(cols.parts);

  const errors = {};
  Object.values(cols).forEach(c => Object.assign(errors, c.errors));
  cols.parts.entries.forEach(p => Object.assign(errors, p.labels.errors));
  showErrors(errors);

  const s = j.session;
  const banner = document.getElementById('submitError');
  banner.textContent = s.banner;
  banner.classList.toggle('hidden', !s.banner);
  if (s.state === 'Terminated') {
    document.querySelector('.wrap').innerHTML = `<h3>Session ended (${esc(s.outcome)}). You can close this window.</h3>`;
    window.close();
  }
}

document.getElementById('bottle-form').addEventListener('submit', async (e) => {
  e.preventDefault();
  const submitter = e.submitter ? e.submitter.textContent : '';
  await post('/api/submit', {submitter, inputs: gatherInputs(), description: document.getElementById('description').value});
}, true);

document.addEventListener('click', async (ev) => {
  const btn = ev.target.closest('[data-control]');
  if (!btn) return;
  ev.preventDefault();
  const url = btn.dataset.control;
  const payload = {};
  if (url.endsWith('/commit_edit')) {
    payload.fields = {};
    btn.closest('tr, li').querySelectorAll('[data-edit]').forEach(inp => {
      const parts = inp.dataset.edit.split('.');
      payload.fields[parts[parts.length - 1]] = inp.value;
    });
  }
  await post(url, payload);
});

document.addEventListener('change', async (ev) => {
  const t = ev.target;
  if (t.dataset.select !== undefined) {
    await post(`/api/parts/${t.dataset.select}/select`, {checked: t.checked});
  } else if (t.id === 'select-all') {
    await post('/api/parts/select_all', {checked: t.checked});
  } else if (t.id === 'description') {
    await post('/api/description', {description: t.value});
  }
});

document.getElementById('discard-button').addEventListener('click', () => post('/api/discard', {}));

window.addEventListener('beforeunload', (e) => {
  const msg = state && state.session.unload_warning;
  if (!msg) return;
  e.preventDefault();
  e.returnValue = msg;
  return msg;
});
window.addEventListener('pagehide', () => {
  if (state && state.session.state === 'Terminated') return;
  navigator.sendBeacon('/api/hidden');
});
setInterval(() => { fetch('/api/ping').catch(() => {}); }, 2000);
fetch('/api/state').then(r => r.json()).then(render);
</script>
</body></html>"""


class App:
    def __init__(self, session: Session, idle_timeout_seconds: int = 300):
        self.session = session
        self.last_ping = time.time()
        self.idle_timeout_seconds = idle_timeout_seconds

    @property
    def draft(self) -> Draft:
        return self.session.draft

    def state(self) -> dict:
        with self.session.lock:
            return {"draft": self.draft.render(), "session": self.session.render()}

    def require_editing(self) -> None:
        if not self.session.editable:
            raise SessionClosed(f"session is {self.session.state}; the draft can no longer be changed")


class Handler(BaseHTTPRequestHandler):
    app: App = None

    def _send_json(self, payload: dict, status: int = 200):
        send_json(self, payload, status)

    def _send_html(self, html: str):
        data = html.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_state(self, ok: bool, status: int = 200, **extra):
        self._send_json({"ok": ok, **extra, **self.app.state()}, status)

    def _read_json(self):
        n = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(n) if n > 0 else b"{}"
        return json.loads(raw.decode("utf-8") or "{}")

    def _commit(self):
        try:
            committed = self.app.session.commit()
        except SubmissionError as exc:
            self._send_state(False, 502, error=str(exc))
            return
        if not committed:
            self._send_state(False, 409, error=f"session is {self.app.session.state}; commit refused")
            return
        self._send_state(True)

    def do_GET(self):
        self.app.last_ping = time.time()
        parsed = urlparse(self.path)
        if parsed.path == "/":
            self._send_html(HTML)
            return

        if parsed.path == "/api/state":
            self._send_state(True)
            return

        if parsed.path == "/api/document":
            with self.app.session.lock:
                self._send_json(assemble(self.app.draft))
            return

        if parsed.path == "/api/ping":
            self._send_json({"ok": True})
            return

        self._send_json({"error": "Not found"}, 404)

    def do_POST(self):
        self.app.last_ping = time.time()
        session = self.app.session
        path = urlparse(self.path).path
        try:
            data = self._read_json()

            if path == "/api/ping":
                self._send_json({"ok": True})
                return

            if path == "/api/hidden":
                self._send_json({"ok": session.close_involuntarily()})
                return

            if path == "/api/discard":
                if not session.discard():
                    raise SessionClosed(f"session is {session.state}; discard refused")
                self._send_state(True)
                return

            if path == "/api/commit":
                self._commit()
                return

            if path == "/api/submit":
                with session.lock:
                    self.app.require_editing()
                    apply_page(self.app.draft, data)
                    if "description" in data:
                        self.app.draft.set_description(str(data.get("description") or ""))
                    action = route_submit(str(data.get("submitter", "")))
                    if action is not None:
                        name, op = action
                        result = getattr(self.app.draft.collection(name), op)()
                        self._send_state(result is not None, action=f"{name}.{op}")
                        return
                self._commit()
                return

            if path == "/api/description":
                with session.lock:
                    self.app.require_editing()
                    apply_page(self.app.draft, data)
                    self.app.draft.set_description(str(data.get("description") or ""))
                    self._send_state(True)
                return

            if path.startswith("/api/"):
                segments = [s for s in path[len("/api/"):].split("/") if s]
                with session.lock:
                    self.app.require_editing()
                    apply_page(self.app.draft, data)
                    ok = apply_collection_op(self.app.draft, segments, data)
                    self._send_state(ok)
                return

            self._send_json({"error": "Not found"}, 404)
        except SessionClosed as exc:
            self._send_json({"error": str(exc), **self.app.state()}, 409)
        except LookupError as exc:
            # CollectionError is a ValueError, so only unknown routes land here.
            self._send_json({"error": str(exc.args[0]) if exc.args else "Not found"}, 404)
        except Exception as exc:  # pylint: disable=broad-except
            self._send_json({"error": str(exc)}, 400)


def make_server(app: App, host: str = "127.0.0.1", port: int = 0) -> ThreadingHTTPServer:
    handler = type("BoundHandler", (Handler,), {"app": app})
    httpd = ThreadingHTTPServer((host, port), handler)
    app.session.on_close = lambda: threading.Thread(target=httpd.shutdown, daemon=True).start()
    return httpd


def start_idle_guard(app: App) -> threading.Thread:
    def idle_guard():
        while not app.session.terminated:
            time.sleep(1)
            # A refused close means a commit is in flight; it may still fail back to Editing.
            if time.time() - app.last_ping > app.idle_timeout_seconds and app.session.close_involuntarily():
                return

    guard = threading.Thread(target=idle_guard, daemon=True)
    guard.start()
    return guard


def load_initial_bottle(http: requests.Session, backing_url: str, bottle_path: Optional[str]) -> dict:
    if bottle_path:
        return load_json_yaml(Path(bottle_path))
    try:
        return fetch_bottle(http, backing_url)
    except (requests.RequestException, ValueError) as exc:
        print(f"Warning: could not load the bottle from {backing_url}: {exc}", file=sys.stderr)
        print("Starting with an empty draft.", file=sys.stderr)
        return {}


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8766)
    parser.add_argument("--backing-url", default="http://127.0.0.1:8765/", help="Address of the backing process")
    parser.add_argument("--bottle", default=None, help="Load the initial draft from this file instead of the backing process")
    parser.add_argument("--idle-timeout", type=int, default=300, help="Seconds without a page ping before the session is closed")
    parser.add_argument("--no-browser", action="store_true", help="Do not open a browser window")
    args = parser.parse_args()

    http = requests.Session()
    draft = Draft.from_bottle(load_initial_bottle(http, args.backing_url, args.bottle))
    session = Session(draft, args.backing_url, http=http)
    app = App(session, idle_timeout_seconds=args.idle_timeout)
    httpd = make_server(app, args.host, args.port)
    start_idle_guard(app)

    url = f"http://{args.host}:{httpd.server_address[1]}"
    print(f"Bottle editor running at {url}")
    print("The editor stops when the bottle is saved or discarded, or when the page closes.")
    if not args.no_browser:
        webbrowser.open(url)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        session.close_involuntarily()
    finally:
        httpd.server_close()
    session.wait_for_notifications(timeout=5)
    print(f"Session ended: {session.outcome or 'interrupted'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
