"""PostgreSQL-backed Canonical Entity Store.

Writers open a :meth:`PostgresEntityStore.session`, which is one transaction.
Ingest serialises on transaction-scoped advisory locks for the geographic band
(or the normalised address) it is about to write to; merge commits lock the
keeper and loser rows with ``SELECT ... FOR UPDATE`` and check ``version``.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from boothworker.core.db import Database
from boothworker.dedup.geo import bounding_box
from boothworker.etl.transform import address_key
from boothworker.models import CanonicalEntity

logger = logging.getLogger(__name__)

_BAND_LOCK_NAMESPACE = 1
_ADDRESS_LOCK_NAMESPACE = 2
_SLUG_LOCK_NAMESPACE = 3

_COLUMNS = (
    "slug",
    "name",
    "address",
    "address_key",
    "city",
    "state",
    "country",
    "postal_code",
    "latitude",
    "longitude",
    "status",
    "description",
    "hours",
    "cost",
    "phone",
    "website",
    "photo_exterior_url",
    "photo_interior_url",
    "photos",
    "machine_model",
    "machine_manufacturer",
    "booth_type",
    "source_names",
    "source_urls",
)

_INSERT = (
    f"INSERT INTO booths ({', '.join(_COLUMNS)}, version, created_at, updated_at) "
    f"VALUES ({', '.join(f'%({name})s' for name in _COLUMNS)}, 0, NOW(), NOW()) RETURNING *;"
)

_UPDATE = (
    "UPDATE booths SET "
    + ", ".join(f"{name} = %({name})s" for name in _COLUMNS)
    + ", version = version + 1, updated_at = NOW() "
    "WHERE id = %(id)s AND version = %(expected_version)s RETURNING *;"
)

_NEARBY = """
SELECT * FROM booths
WHERE latitude BETWEEN %(min_lat)s AND %(max_lat)s
  AND longitude BETWEEN %(min_lon)s AND %(max_lon)s
ORDER BY id
FOR UPDATE;
"""

_BY_ADDRESS = """
SELECT * FROM booths
WHERE lower(city) = lower(%(city)s) AND address_key = %(address_key)s
ORDER BY id
FOR UPDATE;
"""


def _params(entity: CanonicalEntity) -> Dict[str, Any]:
    row = entity.to_row()
    params = {name: row.get(name) for name in _COLUMNS}
    params["address_key"] = address_key(entity.address)
    return params


class PostgresEntitySession:
    """Unit of work over the ``booths`` table inside one transaction."""

    def __init__(self, cursor) -> None:
        self._cur = cursor

    def lock_bands(self, keys: Iterable[int]) -> None:
        for key in sorted(set(keys)):
            self._cur.execute(
                "SELECT pg_advisory_xact_lock(%(ns)s, %(key)s);", {"ns": _BAND_LOCK_NAMESPACE, "key": key}
            )

    def lock_address(self, city: str, key: str) -> None:
        self._cur.execute(
            "SELECT pg_advisory_xact_lock(%(ns)s, hashtext(%(key)s));",
            {"ns": _ADDRESS_LOCK_NAMESPACE, "key": f"{city.lower()}|{key}"},
        )

    def lock_slug(self, base: str) -> None:
        self._cur.execute(
            "SELECT pg_advisory_xact_lock(%(ns)s, hashtext(%(key)s));", {"ns": _SLUG_LOCK_NAMESPACE, "key": base}
        )

    def find_nearby(self, lat: float, lon: float, radius_m: float) -> List[CanonicalEntity]:
        min_lat, min_lon, max_lat, max_lon = bounding_box(lat, lon, radius_m)
        self._cur.execute(
            _NEARBY, {"min_lat": min_lat, "max_lat": max_lat, "min_lon": min_lon, "max_lon": max_lon}
        )
        return [CanonicalEntity.from_row(row) for row in self._cur.fetchall()]

    def find_by_address(self, city: str, key: str) -> List[CanonicalEntity]:
        self._cur.execute(_BY_ADDRESS, {"city": city, "address_key": key})
        return [CanonicalEntity.from_row(row) for row in self._cur.fetchall()]

    def lock_entities(self, ids: Iterable[int]) -> List[CanonicalEntity]:
        self._cur.execute(
            "SELECT * FROM booths WHERE id = ANY(%(ids)s) ORDER BY id FOR UPDATE;", {"ids": sorted(set(ids))}
        )
        return [CanonicalEntity.from_row(row) for row in self._cur.fetchall()]

    def slug_taken(self, slug: str) -> bool:
        self._cur.execute("SELECT 1 FROM booths WHERE slug = %(slug)s;", {"slug": slug})
        return self._cur.fetchone() is not None

    def insert(self, entity: CanonicalEntity) -> CanonicalEntity:
        self._cur.execute(_INSERT, _params(entity))
        return CanonicalEntity.from_row(self._cur.fetchone())

    def update(self, entity: CanonicalEntity, expected_version: int) -> Optional[CanonicalEntity]:
        params = _params(entity)
        params["id"] = entity.id
        params["expected_version"] = expected_version
        self._cur.execute(_UPDATE, params)
        row = self._cur.fetchone()
        return CanonicalEntity.from_row(row) if row else None

    def delete(self, ids: Iterable[int]) -> int:
        ids = sorted(set(ids))
        if not ids:
            return 0
        self._cur.execute("DELETE FROM booths WHERE id = ANY(%(ids)s);", {"ids": ids})
        return self._cur.rowcount


class PostgresEntityStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    @contextmanager
    def session(self) -> Iterator[PostgresEntitySession]:
        with self._db.transaction() as cur:
            yield PostgresEntitySession(cur)

    def get(self, entity_id: int) -> Optional[CanonicalEntity]:
        with self._db.transaction() as cur:
            cur.execute("SELECT * FROM booths WHERE id = %(id)s;", {"id": entity_id})
            row = cur.fetchone()
        return CanonicalEntity.from_row(row) if row else None

    def list_entities(self, city: Optional[str] = None, with_coordinates: bool = False) -> List[CanonicalEntity]:
        clauses = []
        params: Dict[str, Any] = {}
        if city:
            clauses.append("lower(city) = lower(%(city)s)")
            params["city"] = city
        if with_coordinates:
            clauses.append("latitude IS NOT NULL AND longitude IS NOT NULL")
        sql = "SELECT * FROM booths"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self._db.transaction() as cur:
            cur.execute(sql + " ORDER BY id;", params)
            rows = cur.fetchall()
        return [CanonicalEntity.from_row(row) for row in rows]

    def count(self) -> int:
        with self._db.transaction() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM booths;")
            row = cur.fetchone()
        return int(row["total"]) if row else 0
