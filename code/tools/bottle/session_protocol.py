#!/usr/bin/env python3
"""Session end protocol between the draft editor and its backing process.

A session leaves Editing exactly once: through a commit that the backing process
acknowledges, through an explicit discard, or because the page went away. Each path sends
at most one request, and a path is refused while another one is in flight.
"""

import threading
from typing import Callable, List, Optional
from urllib.parse import urljoin

import requests

from build_bottle_document import assemble
from draft_collections import Draft

EDITING = "Editing"
COMMITTING = "Committing"
DISCARDING = "Discarding"
CLOSING = "ClosingInvoluntarily"
TERMINATED = "Terminated"

UNLOAD_WARNING = (
    "You have unsaved changes on your bottle that have not been saved.  "
    "Please click 'Save' at the bottom of the form to prevent losing this data."
)
SUBMIT_FAILED = "The bottle could not be saved"


class SubmissionError(Exception):
    pass


class Session:
    def __init__(
        self,
        draft: Draft,
        backing_url: str,
        http: Optional[requests.Session] = None,
        on_close: Optional[Callable[[], None]] = None,
        timeout: Optional[float] = None,
    ):
        self.draft = draft
        self.backing_url = backing_url
        self.http = http or requests.Session()
        self.on_close = on_close
        self.timeout = timeout
        self.state = EDITING
        self.outcome = ""
        self.dirty = False
        self.banner = ""
        self.lock = threading.RLock()
        self._notifiers: List[threading.Thread] = []
        draft.on_change = self.mark_dirty

    @property
    def discard_url(self) -> str:
        return urljoin(self.backing_url, "/discard")

    @property
    def editable(self) -> bool:
        return self.state == EDITING

    @property
    def terminated(self) -> bool:
        return self.state == TERMINATED

    def mark_dirty(self) -> None:
        with self.lock:
            if self.state == EDITING:
                self.dirty = True

    def _begin(self, state: str) -> bool:
        with self.lock:
            if self.state != EDITING:
                return False
            self.state = state
            return True

    def _finish(self, outcome: str) -> None:
        with self.lock:
            self.state = TERMINATED
            self.outcome = outcome
        if self.on_close is not None:
            self.on_close()

    def _commit_failed(self, message: str) -> SubmissionError:
        with self.lock:
            self.state = EDITING
            self.banner = message
        return SubmissionError(message)

    def commit(self) -> bool:
        with self.lock:
            if not self._begin(COMMITTING):
                return False
            try:
                document = assemble(self.draft)
            except Exception as exc:  # pylint: disable=broad-except
                raise self._commit_failed(f"{SUBMIT_FAILED}: {exc}") from exc
        try:
            response = self.http.post(self.backing_url, json=document, timeout=self.timeout)
        except requests.RequestException as exc:
            raise self._commit_failed(f"{SUBMIT_FAILED}: {exc}") from exc
        if response.status_code != 200:
            raise self._commit_failed(f"{SUBMIT_FAILED}: HTTP {response.status_code}")
        with self.lock:
            self.dirty = False
            self.banner = ""
        self._finish("committed")
        return True

    def discard(self) -> bool:
        if not self._begin(DISCARDING):
            return False
        self._notify_discard()
        self._finish("discarded")
        return True

    def close_involuntarily(self) -> bool:
        if not self._begin(CLOSING):
            return False
        # The page is already gone; nobody waits for the acknowledgment.
        notifier = threading.Thread(target=self._notify_discard, daemon=True)
        self._notifiers.append(notifier)
        notifier.start()
        self._finish("closed")
        return True

    def _notify_discard(self) -> None:
        try:
            self.http.post(self.discard_url, timeout=self.timeout)
        except requests.RequestException:
            pass

    def wait_for_notifications(self, timeout: Optional[float] = None) -> None:
        for notifier in self._notifiers:
            notifier.join(timeout)

    def unload_warning(self) -> Optional[str]:
        with self.lock:
            if self.dirty and self.state != TERMINATED:
                return UNLOAD_WARNING
            return None

    def render(self) -> dict:
        with self.lock:
            return {
                "state": self.state,
                "outcome": self.outcome,
                "dirty": self.dirty,
                "banner": self.banner,
                "unload_warning": self.unload_warning(),
            }
