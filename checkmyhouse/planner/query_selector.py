"""
query_selector.py - Pick the query variant the connected server can run

Columns: the extended variant (with codec metadata) when the server
supports it, the basic variant otherwise.

Dependencies: three tiers tried in priority order, each isolated so a
failure falls through to the next one:

1. system.dependencies, when the profile says the table exists
2. dependencies_database / dependencies_table metadata on system.tables
3. FROM / TO identifiers parsed out of the stored CREATE statement

When nothing is found the object gets empty source and target lists.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Iterable

from ..types.dependencies import Dependencies, TableRef
from ..util.sql_builder import escape_identifier, render_template
from . import queries

logger = logging.getLogger(__name__)

TIER_SYSTEM_DEPENDENCIES = "system_dependencies"
TIER_METADATA = "metadata"
TIER_CREATE_QUERY = "create_query"
TIER_NONE = "none"

COLUMNS_EXTENDED = "extended"
COLUMNS_BASIC = "basic"

_IDENT = r'(?:`[^`]+`|"[^"]+"|[A-Za-z_][A-Za-z0-9_]*)'
_QUALIFIED = rf'({_IDENT}(?:\s*\.\s*{_IDENT})?)'
# Identifier must be taken whole; a trailing "(" marks a table function
_FROM_END = r'(?![A-Za-z0-9_`"]|\s*[.(])'
_TO_END = r'(?![A-Za-z0-9_`"]|\s*\.)'

_FROM_RE = re.compile(rf'\bFROM\s+(?!\(){_QUALIFIED}{_FROM_END}', re.IGNORECASE)
_TO_RE = re.compile(rf'\bTO\s+(?!(?:DISK|VOLUME)\b){_QUALIFIED}{_TO_END}', re.IGNORECASE)
# End of the CREATE header, where the SELECT body starts
_BODY_RE = re.compile(r'\bAS\s+(?:SELECT|WITH|\()', re.IGNORECASE)
_SPLIT_RE = re.compile(rf'({_IDENT})\s*\.\s*({_IDENT})')


async def select_columns_query(prober) -> Tuple[str, str]:
    """Return ``(variant, template)`` for the column listing."""
    profile = await prober.get_profile()
    if profile.has_column_codec_info:
        logger.debug("codec_expression available, using extended column query")
        return COLUMNS_EXTENDED, queries.GET_TABLE_COLUMNS_WITH_CODEC
    logger.debug("codec_expression not available, using basic column query")
    return COLUMNS_BASIC, queries.GET_TABLE_COLUMNS


def _unquote(identifier: str) -> str:
    identifier = identifier.strip()
    if len(identifier) >= 2 and identifier[0] == identifier[-1] and identifier[0] in '`"':
        return identifier[1:-1]
    return identifier


def parse_table_identifier(identifier: str, default_database: str) -> TableRef:
    """Split an optionally schema-qualified, optionally quoted identifier."""
    match = _SPLIT_RE.fullmatch(identifier.strip())
    if match:
        return TableRef(database=_unquote(match.group(1)), table=_unquote(match.group(2)))
    return TableRef(database=default_database, table=_unquote(identifier))


def _unique(refs: Iterable[TableRef], exclude: Optional[TableRef] = None) -> List[TableRef]:
    seen = []
    for ref in refs:
        if ref != exclude and ref not in seen:
            seen.append(ref)
    return seen


def parse_create_query_dependencies(create_query: str, default_database: str,
                                    self_ref: Optional[TableRef] = None) -> Dependencies:
    """Extract FROM sources and the TO target from a CREATE statement."""
    if not create_query:
        return Dependencies(tier=TIER_CREATE_QUERY)

    body_match = _BODY_RE.search(create_query)
    header = create_query[:body_match.start()] if body_match else create_query
    body = create_query[body_match.start():] if body_match else create_query

    sources = [parse_table_identifier(m.group(1), default_database) for m in _FROM_RE.finditer(body)]
    targets = [parse_table_identifier(m.group(1), default_database) for m in _TO_RE.finditer(header)]

    return Dependencies(
        sources=_unique(sources, exclude=self_ref),
        targets=_unique(targets, exclude=self_ref),
        tier=TIER_CREATE_QUERY,
    )


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def metadata_sources(record: Dict[str, Any]) -> List[TableRef]:
    """
    Upstream objects listed in a record's dependencies_database / dependencies_table.

    The fields may be scalars or arrays. They are paired by position, empty
    table names are dropped and a missing database defaults to the record's.
    """
    own_database = record.get("database") or ""
    databases = _as_list(record.get("dependencies_database"))
    tables = _as_list(record.get("dependencies_table"))

    refs = []
    for index, table in enumerate(tables):
        if not table:
            continue
        database = databases[index] if index < len(databases) and databases[index] else own_database
        refs.append(TableRef(database=database, table=table))
    return _unique(refs)


def record_ref(record: Dict[str, Any]) -> TableRef:
    return TableRef(database=record.get("database") or "", table=record.get("name") or record.get("table") or "")


class DependencyResolver:
    """
    Resolves dependency edges for tables and views of one connection.

    One resolver serves one request: rows fetched from system.dependencies
    and the metadata catalog are reused across ``resolve`` calls.
    """

    def __init__(self, backend, prober, catalog: Optional[List[Dict[str, Any]]] = None):
        self.backend = backend
        self.prober = prober
        self._catalog = catalog
        self._dependency_rows: Dict[Optional[str], List[Dict[str, Any]]] = {}
        self._targets_index: Optional[Dict[TableRef, List[TableRef]]] = None

    async def resolve(self, record: Dict[str, Any]) -> Dependencies:
        ref = record_ref(record)

        native = await self._attempt(TIER_SYSTEM_DEPENDENCIES, self._from_dependencies_table, ref, record)
        if native is not None:
            return native

        metadata = await self._attempt(TIER_METADATA, self._from_metadata, ref, record) or Dependencies()
        if metadata.sources:
            return metadata

        parsed = await self._attempt(TIER_CREATE_QUERY, self._from_create_query, ref, record)
        if parsed is not None and not parsed.is_empty:
            parsed.targets = _unique(parsed.targets + metadata.targets)
            return parsed

        if not metadata.is_empty:
            return metadata
        return Dependencies(tier=TIER_NONE)

    async def resolve_many(self, records: List[Dict[str, Any]]) -> List[Tuple[Dict[str, Any], Dependencies]]:
        return [(record, await self.resolve(record)) for record in records]

    async def _attempt(self, tier: str, strategy, ref: TableRef, record: Dict[str, Any]) -> Optional[Dependencies]:
        try:
            return await strategy(ref, record)
        except Exception as e:
            logger.info("Dependency tier %s failed for %s: %s", tier, ref.node_id, e)
            return None

    async def _from_dependencies_table(self, ref: TableRef, record: Dict[str, Any]) -> Optional[Dependencies]:
        profile = await self.prober.get_profile()
        if not profile.has_dependencies_table:
            return None

        rows = await self._load_dependency_rows(ref.database)
        sources = [
            TableRef(row["database"], row["table"]) for row in rows
            if row["dependent_database"] == ref.database and row["dependent_table"] == ref.table
        ]
        targets = [
            TableRef(row["dependent_database"], row["dependent_table"]) for row in rows
            if row["database"] == ref.database and row["table"] == ref.table
        ]
        return Dependencies(sources=_unique(sources), targets=_unique(targets), tier=TIER_SYSTEM_DEPENDENCIES)

    async def _load_dependency_rows(self, database: Optional[str]) -> List[Dict[str, Any]]:
        if None in self._dependency_rows:
            return self._dependency_rows[None]
        if database not in self._dependency_rows:
            if database is None:
                sql = queries.GET_ALL_DEPENDENCIES
            else:
                sql = render_template(queries.GET_TABLE_DEPENDENCIES, {"database": escape_identifier(database)})
            self._dependency_rows[database] = await self.backend.execute_async(sql)
        return self._dependency_rows[database]

    async def preload_all_dependencies(self) -> bool:
        """Fetch every system.dependencies row at once, for whole-graph requests."""
        profile = await self.prober.get_profile()
        if not profile.has_dependencies_table:
            return False
        try:
            await self._load_dependency_rows(None)
            return True
        except Exception as e:
            logger.info("Could not preload system.dependencies: %s", e)
            return False

    async def _from_metadata(self, ref: TableRef, record: Dict[str, Any]) -> Dependencies:
        sources = metadata_sources(record)
        index = await self._load_targets_index()
        targets = index.get(ref, [])
        return Dependencies(sources=_unique(sources, exclude=ref), targets=_unique(targets, exclude=ref),
                            tier=TIER_METADATA)

    async def _load_targets_index(self) -> Dict[TableRef, List[TableRef]]:
        """Invert the catalog: for each object, the objects whose metadata lists it as a source."""
        if self._targets_index is not None:
            return self._targets_index

        if self._catalog is None:
            try:
                self._catalog = await self.backend.execute_async(
                    render_template(queries.GET_LINEAGE_OBJECTS, {"database_filter": ""})
                )
            except Exception as e:
                logger.info("Could not load dependency metadata catalog: %s", e)
                self._catalog = []

        index: Dict[TableRef, List[TableRef]] = {}
        for record in self._catalog:
            downstream = record_ref(record)
            for source in metadata_sources(record):
                index.setdefault(source, []).append(downstream)

        self._targets_index = index
        return index

    async def _from_create_query(self, ref: TableRef, record: Dict[str, Any]) -> Dependencies:
        return parse_create_query_dependencies(record.get("create_table_query") or "", ref.database, ref)
