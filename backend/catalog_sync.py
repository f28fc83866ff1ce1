#!/usr/bin/env python3
"""
Catalog Sync

Reconciles a scraped catalog file with its document collection. One engine
serves every entity type; the per-type differences (identity key, staleness
policy, defaults, indexes) live in ENTITY_CONFIGS.

A run:
1. connects to the store and snapshots the identities already persisted
2. streams the input file record by record, classifying each as update or
   insert and writing them in bulk batches
3. applies the staleness policy to identities missing from the input
   (tombstone products, delete carousel slides, leave categories/brands)
4. drops and recreates the collection's indexes
5. prints a statistics report

Usage:
    python catalog_sync.py products
    python catalog_sync.py carousel --input carousel_data/slides.json
    python catalog_sync.py categories --batch-size 500
"""

import argparse
import os
import sys
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import ijson

from document_store import DocumentStore, get_path, open_store
from sync_errors import (
    IndexManagementError,
    MissingIdentityError,
    ParseError,
    SyncError,
)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "1000"))

# Soft-delete marker on products
TOMBSTONE_FIELD = "deleted"

# Identity values must be one of these (dicts/lists cannot be matched on)
SCALAR_TYPES = (str, int, float, bool)

Identity = Tuple[Any, ...]


class StalenessPolicy(Enum):
    """What happens to persisted records missing from the latest input."""
    NONE = "none"
    SOFT = "soft"  # set the tombstone flag, keep the document
    HARD = "hard"  # delete the document


@dataclass(frozen=True)
class IndexSpec:
    """An index over one or more (dotted) fields."""
    fields: Tuple[str, ...]
    unique: bool = False


@dataclass
class EntityConfig:
    """Everything the engine needs to know about one entity type."""
    name: str
    collection: str
    input_file: str
    key_fields: Tuple[str, ...]
    staleness: StalenessPolicy = StalenessPolicy.NONE
    array_prefix: str = "item"
    batch_size: int = DEFAULT_BATCH_SIZE
    defaults: Dict[str, Any] = field(default_factory=dict)
    stamp_field: Optional[str] = None
    snapshot_fields: Tuple[str, ...] = ()
    indexes: List[IndexSpec] = field(default_factory=list)


ENTITY_CONFIGS: Dict[str, EntityConfig] = {
    "products": EntityConfig(
        name="products",
        collection="products",
        input_file="products_updated_prices.json",
        key_fields=("sku",),
        staleness=StalenessPolicy.SOFT,
        defaults={TOMBSTONE_FIELD: False},
        snapshot_fields=(TOMBSTONE_FIELD,),
        indexes=[
            IndexSpec(("sku",), unique=True),
            IndexSpec(("title",)),
            IndexSpec(("main_category",)),
            IndexSpec(("sub_category",)),
            IndexSpec(("product_type",)),
            IndexSpec(("availability",)),
            IndexSpec((TOMBSTONE_FIELD,)),
        ],
    ),
    "carousel": EntityConfig(
        name="carousel",
        collection="carousel",
        input_file="carousel_data/carousel_images_with_cloudinary.json",
        key_fields=("desktop.url", "mobile.url"),
        staleness=StalenessPolicy.HARD,
        stamp_field="last_updated",
        indexes=[
            IndexSpec(("desktop.url", "mobile.url"), unique=True),
            IndexSpec(("timestamp",)),
            IndexSpec(("params.category_id",)),
        ],
    ),
    "categories": EntityConfig(
        name="categories",
        collection="categories",
        input_file="menu_structure.json",
        array_prefix="categories.item",
        key_fields=("title",),
        indexes=[IndexSpec(("title",), unique=True)],
    ),
    "brands": EntityConfig(
        name="brands",
        collection="brands",
        input_file="brand_structure.json",
        array_prefix="brands.item",
        key_fields=("title",),
        indexes=[IndexSpec(("title",), unique=True)],
    ),
}


def get_entity_config(name: str, batch_size: Optional[int] = None) -> EntityConfig:
    """Look up an entity's config, optionally overriding its batch size."""
    if name not in ENTITY_CONFIGS:
        raise KeyError(f"Unknown entity '{name}'. Valid: {sorted(ENTITY_CONFIGS)}")
    config = ENTITY_CONFIGS[name]
    if batch_size is not None:
        config = replace(config, batch_size=batch_size)
    return config


def format_identity(identity: Identity) -> str:
    return " | ".join(str(value) for value in identity)


# =============================================================================
# Statistics & Reporting Types
# =============================================================================

class AlertType(Enum):
    """Types of alerts that can be raised during a sync."""
    REACTIVATED = "reactivated"
    STALE_RECORD = "stale_record"
    REMOVED_RECORD = "removed_record"
    MISSING_IDENTITY = "missing_identity"
    DUPLICATE_IDENTITY = "duplicate_identity"
    INDEX_ERROR = "index_error"
    PARSE_ERROR = "parse_error"
    DB_ERROR = "db_error"


class AlertSeverity(Enum):
    """Severity levels for alerts."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


ALERT_SEVERITY = {
    AlertType.REACTIVATED: AlertSeverity.INFO,
    AlertType.STALE_RECORD: AlertSeverity.WARNING,
    AlertType.REMOVED_RECORD: AlertSeverity.INFO,
    AlertType.MISSING_IDENTITY: AlertSeverity.WARNING,
    AlertType.DUPLICATE_IDENTITY: AlertSeverity.WARNING,
    AlertType.INDEX_ERROR: AlertSeverity.WARNING,
    AlertType.PARSE_ERROR: AlertSeverity.CRITICAL,
    AlertType.DB_ERROR: AlertSeverity.CRITICAL,
}


@dataclass
class Alert:
    """Individual alert record."""
    alert_type: AlertType
    severity: AlertSeverity
    identity: Optional[str] = None
    message: str = ""


@dataclass
class SyncSummary:
    """Terminal counters of a sync run."""
    entity: str
    existing: int
    updated: int
    inserted: int
    stale: int
    stale_detected: int
    reactivated: int
    skipped: int
    duplicates: int
    final_total: Optional[int]
    final_active: Optional[int]
    final_deleted: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncStats:
    """
    Track sync statistics and alerts for reporting.
    Counters are filled in as the run progresses; the report is printed at
    the end whether the run succeeded or not.
    """

    def __init__(self, entity: str):
        self.entity = entity
        self.started_at = datetime.now()
        self.completed_at: Optional[datetime] = None
        self.failed = False

        # Counters
        self.records_read = 0
        self.existing = 0
        self.updated = 0
        self.inserted = 0
        self.skipped = 0
        self.duplicates = 0
        self.reactivated = 0
        self.stale_detected = 0
        self.stale = 0
        self.final_total: Optional[int] = None
        self.final_active: Optional[int] = None
        self.final_deleted: Optional[int] = None

        self.alerts: List[Alert] = []

    def _alert(self, alert_type: AlertType, message: str, identity: Optional[str] = None):
        self.alerts.append(Alert(
            alert_type=alert_type,
            severity=ALERT_SEVERITY[alert_type],
            identity=identity,
            message=message,
        ))

    def record_missing_identity(self, position: int, field: str, reason: str = "missing"):
        """Record a record skipped for lacking its identity key."""
        self.skipped += 1
        self._alert(AlertType.MISSING_IDENTITY,
                    f"Record #{position} skipped: identity field '{field}' is {reason}")

    def record_duplicate(self, identity: str):
        """Record an identity seen more than once in the input."""
        self.duplicates += 1
        self._alert(AlertType.DUPLICATE_IDENTITY,
                    f"Duplicate identity in input (last one wins): {identity}", identity)

    def record_reactivated(self, identity: str):
        """Record a tombstoned record that reappeared in the input."""
        self.reactivated += 1
        self._alert(AlertType.REACTIVATED, f"Reactivated: {identity}", identity)

    def record_stale(self, identity: str, removed: bool = False):
        """Record a persisted record missing from the input."""
        if removed:
            self._alert(AlertType.REMOVED_RECORD, f"Removed: {identity}", identity)
        else:
            self._alert(AlertType.STALE_RECORD, f"Marked deleted: {identity}", identity)

    def record_index_error(self, message: str):
        self._alert(AlertType.INDEX_ERROR, message)

    def record_failure(self, error: Exception):
        """Record the fatal error that ended the run."""
        self.failed = True
        alert_type = AlertType.PARSE_ERROR if isinstance(error, ParseError) else AlertType.DB_ERROR
        self._alert(alert_type, f"[{type(error).__name__}] {error}")

    def get_alert_counts(self) -> Dict[str, int]:
        """Get counts of each alert type."""
        counts: Dict[str, int] = {}
        for alert in self.alerts:
            key = alert.alert_type.value
            counts[key] = counts.get(key, 0) + 1
        return counts

    def get_alerts_by_type(self, alert_type: AlertType) -> List[Alert]:
        """Get all alerts of a specific type."""
        return [a for a in self.alerts if a.alert_type == alert_type]

    def to_summary(self) -> SyncSummary:
        return SyncSummary(
            entity=self.entity,
            existing=self.existing,
            updated=self.updated,
            inserted=self.inserted,
            stale=self.stale,
            stale_detected=self.stale_detected,
            reactivated=self.reactivated,
            skipped=self.skipped,
            duplicates=self.duplicates,
            final_total=self.final_total,
            final_active=self.final_active,
            final_deleted=self.final_deleted,
        )

    def print_report(self):
        """Print the final sync statistics report to console."""
        self.completed_at = datetime.now()
        duration = self.completed_at - self.started_at
        duration_str = str(timedelta(seconds=int(duration.total_seconds())))

        print("\n" + "=" * 70)
        print(f"SYNC STATISTICS REPORT: {self.entity}")
        print("=" * 70)
        print(f"\nRun Duration: {duration_str}")
        print(f"Result: {'FAILED' if self.failed else 'OK'}")

        print("\n--- INPUT ---")
        print(f"  Records read:  {self.records_read:>6}")
        print(f"  Skipped:       {self.skipped:>6}")
        print(f"  Duplicates:    {self.duplicates:>6}")

        print("\n--- CHANGES ---")
        print(f"  Existing:      {self.existing:>6}")
        print(f"  Updated:       {self.updated:>6}")
        print(f"  Inserted:      {self.inserted:>6}")
        print(f"  Reactivated:   {self.reactivated:>6}")
        print(f"  Stale:         {self.stale:>6}")
        if self.stale_detected != self.stale:
            # Some stale documents changed or vanished during the run
            print(f"  Stale found:   {self.stale_detected:>6}")

        if self.final_total is not None:
            print("\n--- COLLECTION ---")
            print(f"  Total:         {self.final_total:>6}")
            print(f"  Active:        {self.final_active:>6}")
            print(f"  Deleted:       {self.final_deleted:>6}")

        alert_counts = self.get_alert_counts()
        if alert_counts:
            print("\n--- ALERTS ---")
            for alert_type, count in sorted(alert_counts.items()):
                print(f"  {alert_type:<25} {count:>6}")

        warnings = [a for a in self.alerts if a.severity != AlertSeverity.INFO]
        if warnings:
            print("\n--- WARNINGS & FAILURES ---")
            for alert in warnings[:10]:
                print(f"  {alert.message}")
            if len(warnings) > 10:
                print(f"  ... ({len(warnings)} total)")

        print("\n" + "=" * 70, flush=True)


# =============================================================================
# Record Identity Resolution
# =============================================================================

class OperationKind(Enum):
    UPDATE = "update"
    INSERT = "insert"


@dataclass
class SyncOperation:
    """A pending write derived from one input record."""
    kind: OperationKind
    identity: Identity
    filter: Dict[str, Any]
    document: Dict[str, Any]

    def as_update(self) -> "SyncOperation":
        return SyncOperation(OperationKind.UPDATE, self.identity, self.filter, self.document)


def extract_identity(record: Any, key_fields: Tuple[str, ...]) -> Identity:
    """Read the identity key of a record.

    Raises MissingIdentityError when the record is not an object, or a key
    field is absent, null, blank, or not a scalar.
    """
    if not isinstance(record, Mapping):
        raise MissingIdentityError(key_fields[0], "unavailable (record is not an object)")

    values = []
    for key in key_fields:
        value = get_path(record, key)
        if value is None:
            raise MissingIdentityError(key)
        if not isinstance(value, SCALAR_TYPES):
            raise MissingIdentityError(key, "not a scalar value")
        if isinstance(value, str) and not value.strip():
            raise MissingIdentityError(key, "empty")
        values.append(value)
    return tuple(values)


def resolve(record: Mapping[str, Any], snapshot: Mapping[Identity, Any],
            config: EntityConfig) -> SyncOperation:
    """Classify a record as an update of a persisted record or an insert.

    The document carries the full record plus the entity's default fields,
    for updates as well as inserts so a tombstoned record that comes back
    is reactivated. Neither argument is modified.
    """
    identity = extract_identity(record, config.key_fields)
    document = dict(record)
    document.update(config.defaults)
    filter = dict(zip(config.key_fields, identity))
    kind = OperationKind.UPDATE if identity in snapshot else OperationKind.INSERT
    return SyncOperation(kind, identity, filter, document)


# =============================================================================
# Batch Accumulator
# =============================================================================

class BatchAccumulator:
    """
    Buffer update and insert operations and write them in bulk.

    Order is preserved within a kind; updates and inserts are flushed
    independently. flush_remaining() closes the accumulator.
    """

    def __init__(self, store: DocumentStore, batch_size: int, label: str = "records"):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size
        self.label = label
        self.pending: Dict[OperationKind, List[SyncOperation]] = {
            OperationKind.UPDATE: [],
            OperationKind.INSERT: [],
        }
        self.flushed: Dict[OperationKind, int] = {
            OperationKind.UPDATE: 0,
            OperationKind.INSERT: 0,
        }
        self.closed = False

    def push(self, operation: SyncOperation) -> bool:
        """Queue an operation. Returns True when its batch is full."""
        if self.closed:
            raise RuntimeError("Cannot push after flush_remaining()")
        batch = self.pending[operation.kind]
        batch.append(operation)
        return len(batch) >= self.batch_size

    def maybe_flush(self) -> int:
        """Flush every batch that reached the threshold."""
        written = 0
        for kind in (OperationKind.UPDATE, OperationKind.INSERT):
            if len(self.pending[kind]) >= self.batch_size:
                written += self.flush(kind)
        return written

    def flush(self, kind: OperationKind) -> int:
        """Write the pending batch of one kind, regardless of size."""
        batch = self.pending[kind]
        if not batch:
            return 0

        if kind is OperationKind.UPDATE:
            self.store.upsert_many([(op.filter, op.document) for op in batch])
        else:
            self.store.insert_many([op.document for op in batch])

        self.flushed[kind] += len(batch)
        self.pending[kind] = []

        verb = "Updated" if kind is OperationKind.UPDATE else "Inserted"
        print(f"{verb} {self.flushed[kind]} {self.label} so far", flush=True)
        return len(batch)

    def flush_remaining(self) -> int:
        """Final flush of both batches. Call exactly once, after the stream ends."""
        if self.closed:
            raise RuntimeError("flush_remaining() already called")
        self.closed = True
        return self.flush(OperationKind.UPDATE) + self.flush(OperationKind.INSERT)

    @property
    def total_flushed(self) -> int:
        return sum(self.flushed.values())


# =============================================================================
# Streaming Source Reader
# =============================================================================

class CountingReader:
    """Binary file wrapper that remembers where the last chunk read began.

    The parser only reports errors per chunk, so the start of the chunk it
    was working on is the closest byte offset we can give for an error.
    """

    def __init__(self, handle):
        self.handle = handle
        self.position = 0
        self.chunk_start = 0

    def read(self, size: int = -1) -> bytes:
        data = self.handle.read(size)
        self.chunk_start = self.position
        self.position += len(data)
        return data


def read_json_array(path: str, prefix: str = "item") -> Iterator[Dict[str, Any]]:
    """
    Lazily yield the elements of a JSON array from a file.

    `prefix` is an ijson prefix: "item" for a top-level array,
    "categories.item" for the array under the "categories" key. The file is
    parsed incrementally, so memory use does not grow with the array.

    Raises ParseError if the file cannot be opened, is malformed or
    truncated, or has no array at the expected place. Elements yielded
    before the error remain valid.
    """
    if prefix != "item" and not prefix.endswith(".item"):
        raise ValueError(f"Prefix must address array items, got {prefix!r}")
    array_prefix = prefix.rpartition(".")[0]

    try:
        handle = open(path, "rb")
    except OSError as e:
        raise ParseError(f"Cannot open {path}: {e.strerror}", path=path) from e

    found_array = False

    def watch(events: Iterable[Tuple[str, str, Any]]):
        nonlocal found_array
        for event_prefix, event, value in events:
            if event_prefix == array_prefix and event == "start_array":
                found_array = True
            yield event_prefix, event, value

    with handle:
        reader = CountingReader(handle)
        try:
            for record in ijson.items(watch(ijson.parse(reader, use_float=True)), prefix):
                yield record
        except (ijson.JSONError, UnicodeDecodeError) as e:
            raise ParseError(f"Malformed JSON in {path}: {e}", path=path,
                             offset=reader.chunk_start) from e

    if not found_array:
        where = f"'{array_prefix}'" if array_prefix else "the top level"
        raise ParseError(f"No JSON array at {where} in {path}", path=path)


# =============================================================================
# Staleness Detection
# =============================================================================

def compute_stale(snapshot_identities: Iterable[Identity],
                  processed_identities: Iterable[Identity]) -> Set[Identity]:
    """Identities persisted before the run that the input no longer has."""
    return set(snapshot_identities) - set(processed_identities)


def apply_staleness(store: DocumentStore, config: EntityConfig, stale: Set[Identity],
                    stats: Optional[SyncStats] = None) -> int:
    """
    Apply the entity's staleness policy to the stale identities.

    Returns the number of documents actually deleted (hard) or flagged
    (soft). That can be lower than len(stale) if the collection changed
    during the run.
    """
    if config.staleness is StalenessPolicy.NONE or not stale:
        return 0

    ordered = sorted(stale, key=repr)
    removing = config.staleness is StalenessPolicy.HARD
    affected = 0

    for start in range(0, len(ordered), config.batch_size):
        chunk = ordered[start:start + config.batch_size]
        filters = [dict(zip(config.key_fields, identity)) for identity in chunk]
        if removing:
            affected += store.delete_many(filters)
        else:
            affected += store.set_fields_many(filters, {TOMBSTONE_FIELD: True})

    if stats:
        for identity in ordered:
            stats.record_stale(format_identity(identity), removed=removing)

    action = "Deleted" if removing else "Marked as deleted"
    print(f"{action}: {affected} stale {config.collection}", flush=True)
    return affected


# =============================================================================
# Sync Orchestrator
# =============================================================================

class SyncState(Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    SNAPSHOT_LOADED = "snapshot_loaded"
    STREAMING = "streaming"
    RECONCILING = "reconciling"
    INDEXES_REBUILT = "indexes_rebuilt"
    CLOSED = "closed"
    FAILED = "failed"


class CatalogSync:
    """
    One reconciliation run of an input file against a collection.

    The instance owns the store connection for the run and always closes
    it. The identity snapshot is taken once, before streaming, and is not
    refreshed while the run writes.
    """

    def __init__(self, config: EntityConfig, store: DocumentStore,
                 source_path: Optional[str] = None, stats: Optional[SyncStats] = None):
        self.config = config
        self.store = store
        self.source_path = source_path or config.input_file
        self.stats = stats or SyncStats(config.name)
        self.state = SyncState.IDLE
        self.transitions: List[SyncState] = [SyncState.IDLE]
        self.snapshot: Dict[Identity, Dict[str, Any]] = {}
        self.processed: Set[Identity] = set()
        self.accumulator = BatchAccumulator(store, config.batch_size, label=config.collection)
        self.run_stamp: Optional[str] = None

    def run(self) -> SyncSummary:
        """Run the sync. Raises the fatal SyncError after closing the store."""
        if self.state is not SyncState.IDLE:
            raise RuntimeError("A CatalogSync instance can only run once")

        try:
            self._connect()
            self._load_snapshot()
            self._stream()
            self._reconcile()
            self._rebuild_indexes()
        except Exception as e:
            self._fail(e)
            raise
        finally:
            self._close()

        return self.stats.to_summary()

    # -- transitions ---------------------------------------------------------

    def _transition(self, state: SyncState):
        self.state = state
        self.transitions.append(state)

    def _connect(self):
        print(f"Connecting to {self.store.describe()}...", flush=True)
        self.store.connect()
        self._transition(SyncState.CONNECTED)

    def _load_snapshot(self):
        key_fields = self.config.key_fields
        fields = key_fields + self.config.snapshot_fields
        for projection in self.store.find_projections(fields):
            identity = tuple(projection.get(key) for key in key_fields)
            if any(value is None for value in identity):
                continue
            self.snapshot[identity] = {key: projection.get(key) for key in self.config.snapshot_fields}

        self.stats.existing = len(self.snapshot)
        print(f"Found {self.stats.existing} existing {self.config.collection} in database", flush=True)
        self._transition(SyncState.SNAPSHOT_LOADED)

    def _stream(self):
        self._transition(SyncState.STREAMING)
        self.run_stamp = datetime.now().isoformat()
        print(f"Reading {self.config.name} from {self.source_path}", flush=True)

        try:
            records = read_json_array(self.source_path, self.config.array_prefix)
            for position, record in enumerate(records, 1):
                self.stats.records_read += 1
                self._process(position, record)
        except ParseError:
            # Keep everything accepted before the bad input
            self.accumulator.flush_remaining()
            self._collect_write_counts()
            raise

    def _process(self, position: int, record: Any):
        if self.config.stamp_field and isinstance(record, dict):
            record[self.config.stamp_field] = self.run_stamp

        try:
            operation = resolve(record, self.snapshot, self.config)
        except MissingIdentityError as e:
            self.stats.record_missing_identity(position, e.field, e.reason)
            print(f"  Skipping record #{position}: {e}", flush=True)
            return

        identity = operation.identity
        if identity in self.processed:
            self.stats.record_duplicate(format_identity(identity))
            if identity not in self.snapshot:
                # The first occurrence was an insert; land it before updating it
                self.accumulator.flush(OperationKind.INSERT)
            operation = operation.as_update()
        else:
            self.processed.add(identity)
            if operation.kind is OperationKind.UPDATE and self._is_tombstoned(identity):
                self.stats.record_reactivated(format_identity(identity))

        if self.accumulator.push(operation):
            self.accumulator.maybe_flush()

    def _reconcile(self):
        self._transition(SyncState.RECONCILING)
        self.accumulator.flush_remaining()
        self._collect_write_counts()

        stale = compute_stale(self.snapshot.keys(), self.processed)
        if self.config.staleness is StalenessPolicy.SOFT:
            # Already tombstoned last time; nothing to apply
            stale = {identity for identity in stale if not self._is_tombstoned(identity)}
        self.stats.stale_detected = len(stale)
        self.stats.stale = apply_staleness(self.store, self.config, stale, self.stats)

        print("\nSync Complete:")
        print(f"Updated: {self.stats.updated} {self.config.collection}")
        print(f"Inserted: {self.stats.inserted} new {self.config.collection}")
        print(f"Stale: {self.stats.stale} {self.config.collection}", flush=True)

        self._count_final()

    def _count_final(self):
        total = self.store.count()
        if self.config.staleness is StalenessPolicy.SOFT:
            active = self.store.count({TOMBSTONE_FIELD: False})
            deleted = self.store.count({TOMBSTONE_FIELD: True})
        else:
            active, deleted = total, 0

        self.stats.final_total = total
        self.stats.final_active = active
        self.stats.final_deleted = deleted
        print(f"Total {self.config.collection} in database: {total}")
        print(f"Active: {active}")
        print(f"Deleted: {deleted}", flush=True)

    def _rebuild_indexes(self):
        print("\nDropping existing indexes...", flush=True)
        try:
            self.store.drop_indexes()
        except IndexManagementError as e:
            self.stats.record_index_error(str(e))
            print(f"  Warning: {e}", flush=True)

        print("Creating new indexes...", flush=True)
        for spec in self.config.indexes:
            try:
                self.store.create_index(spec.fields, unique=spec.unique)
                unique = " (unique)" if spec.unique else ""
                print(f"Created index on {', '.join(spec.fields)}{unique}", flush=True)
            except IndexManagementError as e:
                self.stats.record_index_error(str(e))
                print(f"  Warning: {e}", flush=True)

        self._transition(SyncState.INDEXES_REBUILT)

    def _fail(self, error: Exception):
        self._collect_write_counts()
        self.stats.record_failure(error)
        print(f"\nError syncing {self.config.name}: {error}", flush=True)
        self._transition(SyncState.FAILED)

    def _close(self):
        self.store.close()
        if self.state is not SyncState.FAILED:
            self._transition(SyncState.CLOSED)

    # -- helpers -------------------------------------------------------------

    def _collect_write_counts(self):
        self.stats.updated = self.accumulator.flushed[OperationKind.UPDATE]
        self.stats.inserted = self.accumulator.flushed[OperationKind.INSERT]

    def _is_tombstoned(self, identity: Identity) -> bool:
        return bool(self.snapshot.get(identity, {}).get(TOMBSTONE_FIELD))


def run_sync(entity: str, input_path: Optional[str] = None, batch_size: Optional[int] = None,
             store: Optional[DocumentStore] = None) -> SyncSummary:
    """Sync one entity with the configured store."""
    config = get_entity_config(entity, batch_size)
    sync = CatalogSync(config, store or open_store(config.collection), input_path)
    return sync.run()


# =============================================================================
# Main
# =============================================================================

def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    parser = argparse.ArgumentParser(
        description='Reconcile a scraped catalog file with its document collection'
    )
    parser.add_argument('entity', choices=sorted(ENTITY_CONFIGS),
                        help='Entity type to sync')
    parser.add_argument('--input', default=None,
                        help='Input JSON file (defaults to the entity\'s hand-off file)')
    parser.add_argument('--batch-size', type=positive_int, default=None,
                        help=f'Bulk write batch size (default {DEFAULT_BATCH_SIZE})')
    args = parser.parse_args(argv)

    print("=" * 60, flush=True)
    print(f"Catalog Sync: {args.entity}", flush=True)
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", flush=True)
    print("=" * 60, flush=True)

    config = get_entity_config(args.entity, args.batch_size)
    sync = CatalogSync(config, open_store(config.collection), args.input)

    try:
        sync.run()
    except SyncError as e:
        sync.stats.print_report()
        print(f"\nSYNC FAILED: {e}", flush=True)
        return 1

    sync.stats.print_report()
    print("SYNC COMPLETE", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
