"""
MarketStore: persistence for players, sales and cached listing fields.

Every write is an upsert keyed by the external id, so reprocessing a page
after a crash or a retry is harmless. Writes run inside `engine.begin()` so
a failed batch leaves nothing behind.

Referential failures surface as MissingReferenceError carrying the player
ids that are absent, which is what DependencyRepair needs to close the gap.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from sqlalchemy import func, text, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from marketsync.errors import MissingReferenceError
from marketsync.models.market import Player, Sale

logger = logging.getLogger(__name__)

PG_FOREIGN_KEY_VIOLATION = "23503"

LISTING_FIELDS = (
    "current_listing_id",
    "current_listing_price",
    "current_listing_status",
    "listing_created_at",
)

_PROCEDURE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class ValuationProcedure(Protocol):
    def run(self, engine, batch_size: int, offset: int) -> Tuple[int, int, int]:
        ...


class SqlValuationProcedure:
    """Calls the stored bulk valuation function `name(batch_size, offset_val)`.

    The function returns one row of (processed_count, updated_count, error_count).
    """

    def __init__(self, name: str):
        if not _PROCEDURE_NAME.match(name):
            raise ValueError(f"Invalid valuation procedure name: {name!r}")
        self.name = name

    def run(self, engine, batch_size: int, offset: int) -> Tuple[int, int, int]:
        stmt = text(f"SELECT * FROM {self.name}(:batch_size, :offset_val)")
        with engine.begin() as conn:
            row = conn.execute(
                stmt, {"batch_size": batch_size, "offset_val": offset}
            ).first()
        if row is None:
            return 0, 0, 0
        return int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == PG_FOREIGN_KEY_VIOLATION:
        return True
    return "FOREIGN KEY" in str(orig).upper()


class MarketStore:
    def __init__(self, engine, valuation: Optional[ValuationProcedure] = None):
        self.engine = engine
        self.valuation = valuation

    # ─── Players ──────────────────────────────────────────────────────────────

    def upsert_players(self, rows: List[Dict[str, Any]]) -> int:
        """Insert or update player rows by id. Returns the number of rows written."""
        if not rows:
            return 0
        rows = _dedupe(rows, "id")
        stmt = self._upsert(Player, rows, "id")
        with self.engine.begin() as conn:
            conn.execute(stmt)
        return len(rows)

    def existing_player_ids(self, player_ids: Iterable[int]) -> Set[int]:
        ids = set(player_ids)
        if not ids:
            return set()
        with Session(self.engine) as s:
            return set(s.exec(select(Player.id).where(Player.id.in_(ids))).all())

    def count_players(self) -> int:
        with Session(self.engine) as s:
            return s.exec(select(func.count()).select_from(Player)).one()

    # ─── Sales ────────────────────────────────────────────────────────────────

    def upsert_sales(self, rows: List[Dict[str, Any]]) -> int:
        """Insert or update sale rows by listing id.

        Raises:
            MissingReferenceError: a row references a player not in the store.
                The batch is rolled back.
        """
        if not rows:
            return 0
        rows = _dedupe(rows, "listing_resource_id")
        stmt = self._upsert(Sale, rows, "listing_resource_id")
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except IntegrityError as exc:
            if not is_foreign_key_violation(exc):
                raise
            referenced = {row["player_id"] for row in rows}
            missing = referenced - self.existing_player_ids(referenced)
            raise MissingReferenceError(
                f"Sales batch references {len(missing)} missing player(s)",
                player_ids=missing,
            ) from exc
        return len(rows)

    def latest_sale_cursor(self) -> Optional[int]:
        """Listing id of the most recently purchased stored sale, None when empty."""
        with Session(self.engine) as s:
            return s.exec(
                select(Sale.listing_resource_id)
                .where(Sale.purchase_date_time.isnot(None))
                .order_by(
                    Sale.purchase_date_time.desc(), Sale.listing_resource_id.desc()
                )
                .limit(1)
            ).first()

    def count_sales(self) -> int:
        with Session(self.engine) as s:
            return s.exec(select(func.count()).select_from(Sale)).one()

    # ─── Current listings ─────────────────────────────────────────────────────

    def clear_current_listings(self) -> int:
        """Null the cached listing fields on every player. Returns rows touched."""
        stmt = (
            update(Player)
            .where(Player.current_listing_id.isnot(None))
            .values({field: None for field in LISTING_FIELDS})
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        logger.info("Cleared current listing fields on %d players", result.rowcount)
        return result.rowcount

    def apply_current_listings(self, rows: List[Dict[str, Any]]) -> int:
        """Write the current listing fields onto their players.

        Later rows for the same player win.

        Raises:
            MissingReferenceError: some players are absent. Nothing is written.
        """
        if not rows:
            return 0
        latest = {row["player_id"]: row for row in rows}
        with self.engine.begin() as conn:
            found = set(
                conn.execute(
                    select(Player.id).where(Player.id.in_(latest.keys()))
                ).scalars()
            )
            missing = set(latest) - found
            if missing:
                raise MissingReferenceError(
                    f"Listings batch references {len(missing)} missing player(s)",
                    player_ids=missing,
                )
            for player_id, row in latest.items():
                conn.execute(
                    update(Player)
                    .where(Player.id == player_id)
                    .values({field: row.get(field) for field in LISTING_FIELDS})
                )
        return len(latest)

    # ─── Valuations ───────────────────────────────────────────────────────────

    def run_valuation_batch(self, batch_size: int, offset: int) -> Tuple[int, int, int]:
        """Run one batch of the bulk valuation. Returns (processed, updated, errors)."""
        if self.valuation is None:
            raise RuntimeError("No valuation procedure configured")
        return self.valuation.run(self.engine, batch_size, offset)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _upsert(self, model, rows: List[Dict[str, Any]], key: str):
        table = model.__table__
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

        stmt = insert(table).values(rows)
        columns = [c for c in rows[0].keys() if c != key]
        return stmt.on_conflict_do_update(
            index_elements=[key],
            set_={c: stmt.excluded[c] for c in columns},
        )


def _dedupe(rows: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Last row wins per key; a multi-row upsert cannot touch the same key twice."""
    return list({row[key]: row for row in rows}.values())
