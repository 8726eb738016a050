"""
Content source adapters for the streaming importer.

The importer depends only on one operation:

    fetch_page(cursor, limit) -> Page(items, next_cursor)

where next_cursor is None once the source is exhausted. Adapters here cover
an in-memory sequence, a DB-API table (LIMIT/OFFSET paging) and a paginated
JSON HTTP API via requests. Hosts can supply any object with the same shape.
"""

import re
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from ..constants import ImportDefaults
from ..exceptions import (
    ConfigValidationError,
    RateLimitedError,
    SourceFetchError,
    SourceTimeoutError,
    TransientSourceError,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')
_ORDER_TERM = re.compile(
    r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?(\s+(ASC|DESC))?$', re.IGNORECASE
)


@dataclass
class Page:
    """One page of items and the cursor for the next page (None = end)"""
    items: List[Any] = field(default_factory=list)
    next_cursor: Any = None


class ContentSource(ABC):
    """Base class for paginated content sources."""

    #: Cursor used when an import starts from the beginning
    initial_cursor: Any = None

    #: Short label for logs and results
    source_type: str = "custom"

    #: True when fetch_page enforces its own deadline on the calling thread,
    #: so the importer must not move the call onto a worker thread
    manages_timeout: bool = False

    @abstractmethod
    def fetch_page(self, cursor: Any, limit: int) -> Page:
        """Fetch up to `limit` items starting at `cursor`."""

    def describe(self) -> Dict[str, Any]:
        return {'type': self.source_type}


class SequenceSource(ContentSource):
    """Offset-paged view over an in-memory sequence."""

    initial_cursor = 0
    source_type = "sequence"

    def __init__(self, items: Sequence[Any]):
        self.items = items
        self.fetch_count = 0

    def fetch_page(self, cursor: Any, limit: int) -> Page:
        offset = int(cursor or 0)
        self.fetch_count += 1
        chunk = list(self.items[offset:offset + limit])
        end = offset + len(chunk)
        next_cursor = end if end < len(self.items) and chunk else None
        return Page(items=chunk, next_cursor=next_cursor)

    def describe(self) -> Dict[str, Any]:
        return {'type': self.source_type, 'size': len(self.items)}


class DatabaseTableSource(ContentSource):
    """
    Pages through a table with bounded LIMIT/OFFSET queries.

    One extra row is requested per page so the last full page is known to be
    final without issuing an additional empty query.

    Queries run on the calling thread, since connections such as sqlite3 are
    bound to the thread that opened them. Where the driver offers a progress
    handler (sqlite3) the per-query timeout is enforced through it.
    """

    initial_cursor = 0
    source_type = "database"

    def __init__(
        self,
        connection,
        table: str,
        columns: Sequence[str] = ('*',),
        where: Optional[str] = None,
        params: Sequence[Any] = (),
        order_by: Optional[str] = None,
        paramstyle: str = 'qmark',
        as_dicts: bool = True,
        timeout: Optional[float] = ImportDefaults.FETCH_TIMEOUT_SECONDS,
    ):
        """
        Initialize DatabaseTableSource.

        Args:
            connection: DB-API 2.0 connection
            table: Table name (validated identifier)
            columns: Column names, or ('*',)
            where: Optional WHERE clause using the connection's placeholders
            params: Parameters for the WHERE clause
            order_by: Comma separated ORDER BY terms (identifiers with ASC/DESC)
            paramstyle: 'qmark' (?) or 'format' (%s)
            as_dicts: Return rows as dicts keyed by column name
            timeout: Seconds allowed per query (None disables the deadline)
        """
        errors = []
        if not _IDENTIFIER.match(table):
            errors.append(f"invalid table name: {table!r}")
        for column in columns:
            if column != '*' and not _IDENTIFIER.match(column):
                errors.append(f"invalid column name: {column!r}")
        if order_by:
            for term in order_by.split(','):
                if not _ORDER_TERM.match(term.strip()):
                    errors.append(f"invalid ORDER BY term: {term.strip()!r}")
        if paramstyle not in ('qmark', 'format'):
            errors.append(f"unsupported paramstyle: {paramstyle!r}")
        if errors:
            raise ConfigValidationError(errors)

        self.connection = connection
        self.table = table
        self.columns = tuple(columns)
        self.where = where
        self.params = tuple(params)
        self.order_by = order_by
        self.paramstyle = paramstyle
        self.as_dicts = as_dicts
        self.timeout = timeout
        self.query = self._build_query()

    def _build_query(self) -> str:
        placeholder = '?' if self.paramstyle == 'qmark' else '%s'
        query = f"SELECT {', '.join(self.columns)} FROM {self.table}"
        if self.where:
            query += f" WHERE {self.where}"
        if self.order_by:
            query += f" ORDER BY {self.order_by}"
        query += f" LIMIT {placeholder} OFFSET {placeholder}"
        return query

    def _is_transient(self, error: Exception) -> bool:
        operational = getattr(self.connection, 'OperationalError', None)
        return isinstance(operational, type) and isinstance(error, operational)

    @property
    def manages_timeout(self) -> bool:
        return hasattr(self.connection, 'set_progress_handler')

    def _install_deadline(self) -> Optional[float]:
        if self.timeout is None or not self.manages_timeout:
            return None
        deadline = time.monotonic() + self.timeout
        # Nonzero return aborts the running statement
        self.connection.set_progress_handler(
            lambda: 1 if time.monotonic() >= deadline else 0, 1000
        )
        return deadline

    def fetch_page(self, cursor: Any, limit: int) -> Page:
        offset = int(cursor or 0)
        deadline = None
        db_cursor = None
        try:
            deadline = self._install_deadline()
            db_cursor = self.connection.cursor()
            db_cursor.execute(self.query, self.params + (limit + 1, offset))
            rows = db_cursor.fetchall()
            names = [d[0] for d in (db_cursor.description or ())]
        except Exception as e:
            if deadline is not None and time.monotonic() >= deadline:
                raise SourceTimeoutError(
                    f"database query at offset {offset} exceeded timeout of {self.timeout}s"
                ) from e
            if self._is_transient(e):
                raise TransientSourceError(f"database query failed at offset {offset}: {e}") from e
            raise SourceFetchError(
                f"database query failed at offset {offset}: {e}", cursor=offset
            ) from e
        finally:
            if db_cursor is not None:
                db_cursor.close()
            if deadline is not None:
                self.connection.set_progress_handler(None, 0)

        has_more = len(rows) > limit
        rows = rows[:limit]
        if self.as_dicts and names:
            items = [dict(zip(names, row)) for row in rows]
        else:
            items = list(rows)

        return Page(items=items, next_cursor=offset + len(items) if has_more else None)

    def describe(self) -> Dict[str, Any]:
        return {'type': self.source_type, 'table': self.table}


class HttpPageSource(ContentSource):
    """
    Paginated JSON API over HTTP.

    Supports token pagination (the response carries the next cursor) and
    offset pagination (the cursor is an item offset).
    """

    source_type = "http"

    def __init__(
        self,
        url: str,
        session: Optional[requests.Session] = None,
        items_key: Optional[str] = 'items',
        next_key: str = 'next_cursor',
        cursor_param: str = 'cursor',
        limit_param: str = 'limit',
        paginate_by: str = 'token',
        timeout: float = ImportDefaults.FETCH_TIMEOUT_SECONDS,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ):
        if paginate_by not in ('token', 'offset'):
            raise ConfigValidationError([f"paginate_by must be 'token' or 'offset', got {paginate_by!r}"])
        if not url.startswith(('http://', 'https://')):
            raise ConfigValidationError([f"url must be http(s): {url!r}"])

        self.url = url
        self.session = session or requests.Session()
        self.items_key = items_key
        self.next_key = next_key
        self.cursor_param = cursor_param
        self.limit_param = limit_param
        self.paginate_by = paginate_by
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.params = dict(params or {})
        self.initial_cursor = 0 if paginate_by == 'offset' else None

    def fetch_page(self, cursor: Any, limit: int) -> Page:
        params = dict(self.params)
        params[self.limit_param] = limit
        if cursor is not None:
            params[self.cursor_param] = cursor

        try:
            response = self.session.get(
                self.url,
                params=params,
                headers={'Accept': 'application/json', **self.headers},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise SourceTimeoutError(f"request to {self.url} timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise TransientSourceError(f"connection to {self.url} failed: {e}") from e
        except requests.RequestException as e:
            raise SourceFetchError(f"request to {self.url} failed: {e}", cursor=cursor) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"{self.url} rate limited the import",
                retry_after=_parse_retry_after(response.headers.get('Retry-After')),
            )
        if status >= 500:
            raise TransientSourceError(f"{self.url} returned {status}")
        if status >= 400:
            raise SourceFetchError(f"{self.url} returned {status}: {response.text[:200]}", cursor=cursor)

        try:
            body = response.json()
        except ValueError as e:
            raise SourceFetchError(f"{self.url} returned invalid JSON: {e}", cursor=cursor) from e

        if isinstance(body, list):
            items, token = body, None
        elif isinstance(body, dict):
            items = body.get(self.items_key, []) if self.items_key else body
            token = body.get(self.next_key)
        else:
            raise SourceFetchError(f"{self.url} returned unexpected payload type", cursor=cursor)

        if not isinstance(items, list):
            raise SourceFetchError(f"{self.url}: '{self.items_key}' is not a list", cursor=cursor)

        if self.paginate_by == 'offset':
            offset = int(cursor or 0)
            next_cursor = offset + len(items) if len(items) >= limit else None
        else:
            next_cursor = token

        return Page(items=items, next_cursor=next_cursor)

    def describe(self) -> Dict[str, Any]:
        return {'type': self.source_type, 'url': self.url, 'paginate_by': self.paginate_by}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


_REQUIRED_KEYS = {
    'sequence': ('items',),
    'database': ('connection', 'table'),
    'http': ('url',),
}


def create_source(descriptor: Mapping[str, Any], **overrides) -> ContentSource:
    """
    Build a content source from a descriptor.

    Args:
        descriptor: {"type": "sequence"|"database"|"http", ...adapter options}
        **overrides: Extra options (e.g. a live connection or session)

    Returns:
        ContentSource instance
    """
    options = dict(descriptor)
    options.update(overrides)
    source_type = options.pop('type', None)

    if source_type not in _REQUIRED_KEYS:
        raise ConfigValidationError(
            [f"unsupported source type: {source_type!r}; expected one of "
             f"{', '.join(sorted(_REQUIRED_KEYS))}"]
        )

    missing = [key for key in _REQUIRED_KEYS[source_type] if key not in options]
    if missing:
        raise ConfigValidationError(
            [f"{source_type} source requires '{key}'" for key in missing]
        )

    try:
        if source_type == 'sequence':
            return SequenceSource(**options)
        if source_type == 'database':
            return DatabaseTableSource(**options)
        return HttpPageSource(**options)
    except TypeError as e:
        raise ConfigValidationError([f"invalid {source_type} source options: {e}"])


__all__ = [
    'Page',
    'ContentSource',
    'SequenceSource',
    'DatabaseTableSource',
    'HttpPageSource',
    'create_source',
]
