from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator

from passport_sync.services.openmrs_sync.errors import SourceUnavailable
from passport_sync.services.openmrs_sync.types import (
    SourceObservation,
    SyncWatermark,
    normalize_datetime,
    resolve_value,
)

logger = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 200

_OBSERVATION_COLUMNS = """
    o.obs_id,
    o.person_id,
    o.encounter_id,
    o.obs_datetime,
    o.date_created,
    o.value_text,
    o.value_numeric,
    cn_value.name AS value_coded_name,
    o.comments,
    cn.name AS concept_name,
    pn.given_name,
    pn.family_name,
    COALESCE(enc_location.name, obs_location.name) AS location_name,
    COALESCE(
        NULLIF((
            SELECT CONCAT_WS(' ', prov_pn.given_name, prov_pn.family_name)
            FROM encounter_provider ep
            JOIN provider prov ON ep.provider_id = prov.provider_id AND prov.retired = 0
            JOIN person_name prov_pn ON prov.person_id = prov_pn.person_id AND prov_pn.voided = 0
            WHERE ep.encounter_id = o.encounter_id AND ep.voided = 0
            ORDER BY prov_pn.preferred DESC, ep.encounter_provider_id ASC
            LIMIT 1
        ), ''),
        NULLIF(CONCAT_WS(' ', creator_pn.given_name, creator_pn.family_name), '')
    ) AS provider_name
"""

_OBSERVATION_JOINS = """
    FROM obs o
    JOIN concept_name cn
        ON o.concept_id = cn.concept_id
        AND cn.locale = 'en'
        AND cn.concept_name_type = 'FULLY_SPECIFIED'
        AND cn.voided = 0
    LEFT JOIN concept_name cn_value
        ON o.value_coded = cn_value.concept_id
        AND cn_value.locale = 'en'
        AND cn_value.concept_name_type = 'FULLY_SPECIFIED'
        AND cn_value.voided = 0
    LEFT JOIN person_name pn
        ON o.person_id = pn.person_id
        AND pn.voided = 0
        AND pn.preferred = 1
    LEFT JOIN encounter e ON o.encounter_id = e.encounter_id AND e.voided = 0
    LEFT JOIN users creator ON e.creator = creator.user_id
    LEFT JOIN person_name creator_pn
        ON creator.person_id = creator_pn.person_id
        AND creator_pn.voided = 0
        AND creator_pn.preferred = 1
    LEFT JOIN location enc_location ON e.location_id = enc_location.location_id
    LEFT JOIN location obs_location ON o.location_id = obs_location.location_id
"""


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _check_tcp_connectivity(host: str | None, port: int, timeout_seconds: int) -> None:
    if not host:
        raise SourceUnavailable("OpenMRS database host is not configured.")
    sock = socket.socket()
    sock.settimeout(timeout_seconds)
    try:
        sock.connect((host, port))
    except OSError as exc:
        raise SourceUnavailable(
            f"Cannot reach OpenMRS database at {host}:{port} ({exc}). "
            "Check network, firewall and MySQL port."
        ) from exc
    finally:
        sock.close()


@dataclass
class OpenMrsSqlConfig:
    enabled: bool
    host: str | None
    port: int
    database: str | None
    user: str | None
    password: str | None
    driver: str | None
    ssl: bool
    timeout_seconds: int
    source_system: str = "openmrs"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "OpenMrsSqlConfig":
        env = environ or os.environ
        return cls(
            enabled=_parse_bool(env.get("OPENMRS_DB_ENABLED"), default=False),
            host=env.get("OPENMRS_DB_HOST"),
            port=int(env.get("OPENMRS_DB_PORT", "3306")),
            database=env.get("OPENMRS_DB_NAME", "openmrs"),
            user=env.get("OPENMRS_DB_USER"),
            password=env.get("OPENMRS_DB_PASSWORD"),
            driver=env.get("OPENMRS_DB_DRIVER"),
            ssl=_parse_bool(env.get("OPENMRS_DB_SSL"), default=False),
            timeout_seconds=int(env.get("OPENMRS_DB_TIMEOUT_SECONDS", "8")),
            source_system=env.get("SYNC_SOURCE_SYSTEM") or "openmrs",
        )

    def require_enabled(self) -> None:
        if not self.enabled:
            raise RuntimeError("OpenMRS database source is disabled (set OPENMRS_DB_ENABLED=true).")
        missing = [
            name
            for name, value in {
                "OPENMRS_DB_HOST": self.host,
                "OPENMRS_DB_NAME": self.database,
                "OPENMRS_DB_USER": self.user,
                "OPENMRS_DB_PASSWORD": self.password,
            }.items()
            if not value
        ]
        if missing:
            raise RuntimeError("Missing required OpenMRS env vars: " + ", ".join(missing))


class OpenMrsSqlSource:
    """Read-only access to the OpenMRS `obs` table over ODBC."""

    def __init__(self, config: OpenMrsSqlConfig) -> None:
        self._config = config
        self._tcp_checked = False
        self.source_system = config.source_system

    def dry_run_summary(
        self,
        since: SyncWatermark | None = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        return {
            "source": "openmrs",
            "server": f"{self._config.host}:{self._config.port}",
            "database": self._config.database,
            "since": since.model_dump(mode="json") if since else None,
            "pending_observations": self.count_observations(since=since),
            "sample_observations": [
                item.model_dump(mode="json")
                for item in self.iter_observations(since=since, limit=limit)
            ],
        }

    def count_observations(self, since: SyncWatermark | None = None) -> int:
        where, params = self._build_watermark_filter(since)
        rows = self._query(f"SELECT COUNT(*) AS count FROM obs o WHERE {where}", params)
        return int(rows[0]["count"]) if rows else 0

    def iter_observations(
        self,
        since: SyncWatermark | None = None,
        limit: int | None = None,
    ) -> Iterable[SourceObservation]:
        where, params = self._build_watermark_filter(since)
        sql = (
            f"SELECT {_OBSERVATION_COLUMNS} {_OBSERVATION_JOINS} "
            f"WHERE {where} "
            "ORDER BY o.date_created ASC, o.obs_id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        for row in self._iter_query(sql, params):
            yield self._row_to_observation(row)

    def _row_to_observation(self, row: dict[str, Any]) -> SourceObservation:
        value, kind = resolve_value(
            row.get("value_text"),
            row.get("value_numeric"),
            row.get("value_coded_name"),
        )
        observed_at = row["obs_datetime"]
        recorded_at = row.get("date_created") or observed_at
        return SourceObservation(
            source_id=str(row["obs_id"]),
            source_person_id=str(row["person_id"]),
            person_given_name=_clean(row.get("given_name")),
            person_family_name=_clean(row.get("family_name")),
            concept_name=_clean(row.get("concept_name")) or "Unknown concept",
            value=value,
            value_kind=kind,
            observed_at=normalize_datetime(observed_at),
            recorded_at=normalize_datetime(recorded_at),
            comments=_clean(row.get("comments")),
            location_name=_clean(row.get("location_name")),
            provider_name=_clean(row.get("provider_name")),
            encounter_id=str(row["encounter_id"]) if row.get("encounter_id") is not None else None,
        )

    def _build_watermark_filter(self, since: SyncWatermark | None) -> tuple[str, list[Any]]:
        filters = ["o.voided = 0"]
        params: list[Any] = []
        if since is not None:
            recorded_at = self._to_source_datetime(since.recorded_at)
            if since.source_id is None:
                filters.append("o.date_created >= ?")
                params.append(recorded_at)
            else:
                filters.append("(o.date_created > ? OR (o.date_created = ? AND o.obs_id > ?))")
                params.extend([recorded_at, recorded_at, _source_id_param(since.source_id)])
        return " AND ".join(filters), params

    @staticmethod
    def _to_source_datetime(value: datetime) -> datetime:
        # OpenMRS stores naive DATETIME values in UTC.
        return normalize_datetime(value).replace(tzinfo=None)

    def _connect(self):
        if not self._tcp_checked:
            _check_tcp_connectivity(
                self._config.host,
                self._config.port,
                timeout_seconds=min(self._config.timeout_seconds, 5),
            )
            self._tcp_checked = True
        try:
            import pyodbc  # type: ignore
        except ImportError as exc:
            raise RuntimeError(
                "pyodbc is not installed. Install it and the MySQL ODBC driver."
            ) from exc

        driver = self._config.driver or "MySQL ODBC 8.0 Unicode Driver"
        ssl_mode = "REQUIRED" if self._config.ssl else "PREFERRED"
        conn_str = (
            f"DRIVER={{{driver}}};SERVER={self._config.host};PORT={self._config.port};"
            f"DATABASE={self._config.database};UID={self._config.user};"
            f"PWD={self._config.password};SSLMODE={ssl_mode};"
            f"CONNECT_TIMEOUT={self._config.timeout_seconds};"
            f"READTIMEOUT={self._config.timeout_seconds};"
        )
        try:
            return pyodbc.connect(conn_str, timeout=self._config.timeout_seconds, autocommit=True)
        except pyodbc.Error as exc:
            raise SourceUnavailable(f"OpenMRS connection failed: {exc}") from exc

    def _query(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        return list(self._iter_query(sql, params))

    def _iter_query(self, sql: str, params: list[Any] | None = None) -> Iterator[dict[str, Any]]:
        conn = self._connect()
        import pyodbc  # type: ignore

        try:
            cursor = conn.cursor()
            try:
                # Some pyodbc builds don't support cursor.timeout; connect() already sets timeout.
                try:
                    cursor.timeout = self._config.timeout_seconds
                except AttributeError:
                    pass
                cursor.execute(sql, params or [])
                columns = [col[0] for col in cursor.description]
                while True:
                    rows = cursor.fetchmany(FETCH_BATCH_SIZE)
                    if not rows:
                        break
                    for row in rows:
                        yield dict(zip(columns, row))
            except pyodbc.Error as exc:
                logger.warning("OpenMRS query failed: %s", exc)
                raise SourceUnavailable(f"OpenMRS query failed: {exc}") from exc
            finally:
                try:
                    cursor.close()
                except pyodbc.Error:
                    pass
        finally:
            try:
                conn.close()
            except pyodbc.Error as exc:
                raise SourceUnavailable(f"OpenMRS connection close failed: {exc}") from exc


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _source_id_param(source_id: str) -> int | str:
    return int(source_id) if source_id.isdigit() else source_id
