"""
Repository: SQL operations for `places`, the static registry of named
locations that `place_id` values in location events refer to.
"""

from typing import List

from db import get_conn, storage_errors
from models import PlaceIn, StoredPlace


_COLUMNS = "place_id, label, lat, lng, radius_m, created_at"


class PlaceRepo:
    """DB access for places."""

    def __init__(self, db_url: str, connect=get_conn):
        self.db_url = db_url
        self._connect = connect

    def list_places(self) -> List[StoredPlace]:
        with storage_errors("list places"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_COLUMNS} FROM places ORDER BY created_at ASC")
                    return [
                        StoredPlace(
                            place_id=r[0], label=r[1], lat=r[2], lng=r[3],
                            radius_m=r[4], created_at=r[5],
                        )
                        for r in cur.fetchall()
                    ]

    def upsert(self, place: PlaceIn) -> bool:
        """Create or update a place. Returns True if it already existed."""

        with storage_errors("upsert place"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    # xmax = 0 only for a freshly inserted tuple
                    cur.execute(
                        "INSERT INTO places (place_id, label, lat, lng, radius_m) "
                        "VALUES (%s, %s, %s, %s, %s) "
                        "ON CONFLICT (place_id) DO UPDATE SET "
                        "label = EXCLUDED.label, lat = EXCLUDED.lat, "
                        "lng = EXCLUDED.lng, radius_m = EXCLUDED.radius_m "
                        "RETURNING (xmax <> 0)",
                        (place.place_id, place.label, place.lat, place.lng, place.radius_m),
                    )
                    updated = bool(cur.fetchone()[0])
                conn.commit()
        return updated

    def delete(self, place_id: str) -> bool:
        """Delete a place. Returns False if it did not exist."""

        with storage_errors("delete place"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM places WHERE place_id = %s", (place_id,))
                    deleted = cur.rowcount == 1
                conn.commit()
        return deleted

