"""
Index writers.

An IndexWriter accepts documents, makes them durable on flush, purges
every document of given entity types and optimizes the index. Writers
do their own internal locking; the job-wide serialization of flushes
is SerializedFlusher's job.
"""

import json
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from .converters import ID_FIELD, TYPE_FIELD
from .errors import FlushError, IndexWriterError
from .logger import get_logger
from .retry import RetryError, exponential_backoff, should_retry_http_status

logger = get_logger()

ENTITY_TYPE_FIELD = "entity_type"


class IndexWriter:
    """Interface of the search index being rebuilt."""

    def add_documents(self, documents: Sequence[Dict[str, Any]]) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        raise NotImplementedError

    def purge(self, entity_types: Sequence[str]) -> None:
        raise NotImplementedError

    def optimize(self) -> None:
        raise NotImplementedError


class InMemoryIndexWriter(IndexWriter):
    """
    Dictionary-backed index.

    Added documents become visible on flush. Every purge, optimize and
    flush is appended to `events`, in order.
    """

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.events: List[Tuple[Any, ...]] = []
        self._staged: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def add_documents(self, documents: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            self._staged.extend(documents)

    def flush(self) -> None:
        with self._lock:
            staged, self._staged = self._staged, []
            for document in staged:
                self.documents[document[ID_FIELD]] = document
            self.events.append(("flush", len(staged)))

    def purge(self, entity_types: Sequence[str]) -> None:
        types = set(entity_types)
        with self._lock:
            self.documents = {
                doc_id: doc for doc_id, doc in self.documents.items()
                if doc.get(TYPE_FIELD) not in types
            }
            self.events.append(("purge", tuple(entity_types)))

    def optimize(self) -> None:
        with self._lock:
            self.events.append(("optimize",))

    def count(self, entity_type: Optional[str] = None) -> int:
        with self._lock:
            if entity_type is None:
                return len(self.documents)
            return sum(1 for doc in self.documents.values() if doc.get(TYPE_FIELD) == entity_type)


class TransientHTTPError(IndexWriterError):
    """Retryable HTTP status from the search server."""
    pass


class OpenSearchIndexWriter(IndexWriter):
    """
    Writes to an OpenSearch/Elasticsearch index over HTTP.

    Args:
        base_url: Server URL, e.g. http://localhost:9200
        index: Index (or write alias) name
        session: requests.Session to use (default: a new one)
        timeout: Seconds per request
        max_retries: Retries on connection errors and 408/429/5xx
        base_delay: Initial backoff delay in seconds
    """

    def __init__(
        self,
        base_url: str,
        index: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.index = index
        self.session = session or requests.Session()
        self.timeout = timeout
        self._pending: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._send = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(requests.exceptions.ConnectionError, requests.exceptions.Timeout, TransientHTTPError),
            on_retry=self._on_retry,
        )(self._send_once)

    def _on_retry(self, attempt: int, error: Exception, delay: float) -> None:
        logger.warning("Search server request failed, retrying", attempt=attempt, delay=delay, error=str(error))

    def _send_once(self, method: str, path: str, **kwargs) -> requests.Response:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        if should_retry_http_status(response.status_code):
            raise TransientHTTPError(f"HTTP {response.status_code} from {path}")
        return response

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._send(method, path, **kwargs)
        except RetryError as e:
            raise IndexWriterError(f"{method} {path} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise IndexWriterError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 300:
            raise IndexWriterError(f"{method} {path} returned HTTP {response.status_code}: {response.text[:500]}")
        return response.json() if response.content else {}

    def add_documents(self, documents: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            self._pending.extend(documents)

    def flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
        if not pending:
            return

        payload = "\n".join(_bulk_lines(self.index, pending)) + "\n"
        try:
            result = self._request(
                "POST",
                f"/{self.index}/_bulk",
                data=payload.encode("utf-8"),
                headers={"Content-Type": "application/x-ndjson"},
            )
        except IndexWriterError as e:
            raise FlushError(str(e)) from e

        if result.get("errors"):
            failures = []
            for item in result.get("items", []):
                action = item.get("index") or {}
                if action.get("error"):
                    failures.append(action)
            reason = failures[0].get("error") if failures else "unknown"
            raise FlushError(f"{len(failures)} of {len(pending)} documents rejected: {reason}")

    def purge(self, entity_types: Sequence[str]) -> None:
        self._request(
            "POST",
            f"/{self.index}/_delete_by_query?conflicts=proceed&refresh=true",
            json={"query": {"terms": {ENTITY_TYPE_FIELD: list(entity_types)}}},
        )

    def optimize(self) -> None:
        self._request("POST", f"/{self.index}/_forcemerge?max_num_segments=1")


def _bulk_lines(index: str, documents: Iterable[Dict[str, Any]]) -> Iterable[str]:
    for document in documents:
        source = {k: v for k, v in document.items() if not k.startswith("_")}
        source[ENTITY_TYPE_FIELD] = document[TYPE_FIELD]
        yield json.dumps({"index": {"_index": index, "_id": document[ID_FIELD]}})
        yield json.dumps(source, ensure_ascii=False, default=str)


class SerializedFlusher:
    """
    Job-wide flush gate.

    Every chunk processor flushes through one instance; a flush submits
    the chunk's documents and flushes them while holding one lock, so
    flushes never interleave. Failed flushes are retried with backoff;
    once the budget is spent FlushError is raised.
    """

    def __init__(self, writer: IndexWriter, max_retries: int = 3, base_delay: float = 0.5):
        self.writer = writer
        self._lock = threading.Lock()
        self._flush = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(Exception,),
            on_retry=self._on_retry,
        )(self._flush_once)

    def _on_retry(self, attempt: int, error: Exception, delay: float) -> None:
        logger.record_flush_retry()
        logger.warning("Index flush failed, retrying", attempt=attempt, delay=delay, error=str(error))

    def _flush_once(self, documents: Sequence[Dict[str, Any]]) -> None:
        self.writer.add_documents(documents)
        self.writer.flush()

    def flush(self, documents: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            try:
                self._flush(documents)
            except RetryError as e:
                raise FlushError(f"Index flush failed: {e}") from e
