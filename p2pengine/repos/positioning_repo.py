"""Positioning repository — tuple configs and pricing decision history."""

import json
from datetime import datetime, timezone
from typing import Optional

from p2pengine.positioning.models import PositioningConfig, PricingDecision, TupleKey
from p2pengine.repos.db import get_connection


class PositioningRepo:
    """Data access layer for positioning configs and decisions.

    Configs are stored as JSON so new optional fields need no migration.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Configs ──────────────────────────────────────────────────────────

    def upsert_config(self, cfg: PositioningConfig) -> None:
        """Insert or replace the config for ``cfg.key``."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO positioning_configs
                    (merchant_id, asset, fiat, side, config_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (merchant_id, asset, fiat, side)
                DO UPDATE SET config_json = excluded.config_json,
                              updated_at = excluded.updated_at
                """,
                (
                    cfg.merchant_id, cfg.asset, cfg.fiat, cfg.side.value,
                    json.dumps(cfg.to_dict()),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_config(self, key: TupleKey) -> Optional[PositioningConfig]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT config_json FROM positioning_configs
                WHERE merchant_id = ? AND asset = ? AND fiat = ? AND side = ?
                """,
                (key.merchant_id, key.asset, key.fiat, key.side.value),
            ).fetchone()
            if row is None:
                return None
            return PositioningConfig.from_dict(json.loads(row["config_json"]))
        finally:
            conn.close()

    def list_configs(self, merchant_id: str) -> list[PositioningConfig]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT config_json FROM positioning_configs
                WHERE merchant_id = ? ORDER BY asset, fiat, side
                """,
                (merchant_id,),
            ).fetchall()
            return [PositioningConfig.from_dict(json.loads(r["config_json"])) for r in rows]
        finally:
            conn.close()

    # ── Decisions ────────────────────────────────────────────────────────

    def record_decision(
        self,
        key: TupleKey,
        decision: PricingDecision,
        published: bool,
    ) -> int:
        """Append a decision to the history and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO pricing_decisions
                    (merchant_id, asset, fiat, side, target_price,
                     reference_price, qualified_count, published, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    key.merchant_id, key.asset, key.fiat, key.side.value,
                    str(decision.target_price),
                    str(decision.reference_competitor_price),
                    decision.qualified_competitor_count,
                    int(published),
                    decision.computed_at.isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def list_decisions(self, merchant_id: str, limit: int = 50) -> list[dict]:
        """Return recent decisions for a merchant, newest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM pricing_decisions
                WHERE merchant_id = ? ORDER BY id DESC LIMIT ?
                """,
                (merchant_id, limit),
            ).fetchall()
            decisions = []
            for row in rows:
                item = dict(row)
                item["published"] = bool(item["published"])
                decisions.append(item)
            return decisions
        finally:
            conn.close()
