"""
Evidence storage backends.

A backend stores clip bytes under a key and links the stored reference to
a flag. Failures raise ``StorageError``; the upload queue retries them.
"""

import json
import os
import threading
from typing import Dict, Optional

import requests

from ..core.adapters import StorageError
from .logger import get_logger

logger = get_logger(__name__)


class EvidenceStorage:
    """Storage interface used by the upload queue."""

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        """Store ``data`` under ``key`` and return a durable reference."""
        raise NotImplementedError

    def link(self, flag_id: str, ref: str) -> None:
        """Attach ``ref`` to the flag record ``flag_id``."""
        raise NotImplementedError


class LocalEvidenceStorage(EvidenceStorage):
    """Clips as files under ``root``; flag links kept in ``root/links.json``."""

    LINKS_FILE = "links.json"

    def __init__(self, root: str):
        self.root = root
        self._lock = threading.Lock()
        os.makedirs(root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root, key))
        if not path.startswith(os.path.normpath(self.root) + os.sep):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Could not write {key}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes at {path} ({content_type})")
        return path

    def links(self) -> Dict[str, str]:
        path = os.path.join(self.root, self.LINKS_FILE)
        if not os.path.exists(path):
            return {}
        with open(path, 'r') as f:
            return json.load(f)

    def link(self, flag_id: str, ref: str) -> None:
        with self._lock:
            try:
                links = self.links()
                links[flag_id] = ref
                with open(os.path.join(self.root, self.LINKS_FILE), 'w') as f:
                    json.dump(links, f, indent=2)
            except (OSError, ValueError) as e:
                raise StorageError(f"Could not link flag {flag_id}: {e}") from e


class HttpEvidenceStorage(EvidenceStorage):
    """
    Evidence service over HTTP.

    Clips are PUT to ``{base_url}/evidence/{key}``; links are PATCHed to
    ``{base_url}/flags/{flag_id}`` as ``{"evidence_url": ref}``.
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        url = f"{self.base_url}/evidence/{key}"
        try:
            response = self.session.put(url, data=data, headers={'Content-Type': content_type},
                                        timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        self._check(response, f"upload {key}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        return body.get('url', url) if isinstance(body, dict) else url

    def link(self, flag_id: str, ref: str) -> None:
        url = f"{self.base_url}/flags/{flag_id}"
        try:
            response = self.session.patch(url, json={'evidence_url': ref}, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"Linking flag {flag_id} failed: {e}") from e
        self._check(response, f"link flag {flag_id}")

    @staticmethod
    def _check(response: requests.Response, action: str) -> None:
        if not 200 <= response.status_code < 300:
            raise StorageError(f"Could not {action}: HTTP {response.status_code}")
