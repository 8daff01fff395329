from __future__ import annotations

"""Schema catalog: schema name -> version -> table names.

The catalog is fetched once per run from the data models service (or read
from a JSON file of the same shape) and is read-only afterwards.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from .constants import DEFAULT_SERVICE, HTTP_TIMEOUT
from .errors import ServiceError

logger = logging.getLogger(__name__)

_VERSION_PART = re.compile(r"(\d+)")


def version_key(version: str):
    """Natural ordering, so that '2.10.0' sorts after '2.9.0'."""
    return [(0, int(p), "") if p.isdigit() else (1, 0, p) for p in _VERSION_PART.split(version) if p]


class SchemaCatalog:
    def __init__(self, schemas: Mapping[str, Mapping[str, Iterable[str]]]):
        self._schemas: Dict[str, Dict[str, tuple]] = {}
        for name, versions in schemas.items():
            self._schemas[name.lower()] = {v.lower(): tuple(t.lower() for t in tables) for v, tables in versions.items()}

    @classmethod
    def from_models(cls, models: Iterable[Mapping[str, Any]]) -> "SchemaCatalog":
        """Build from the service's model list: ``[{name, version, tables}]``.

        Tables may be given as plain names or as objects with a ``name`` key.
        """
        schemas: Dict[str, Dict[str, List[str]]] = {}
        try:
            for model in models:
                tables = []
                for table in model.get("tables") or []:
                    tables.append(table["name"] if isinstance(table, Mapping) else str(table))
                schemas.setdefault(str(model["name"]), {})[str(model["version"])] = tables
        except (AttributeError, KeyError, TypeError) as exc:
            raise ServiceError(f"unexpected data models document: {exc}") from exc
        return cls(schemas)

    def names(self) -> List[str]:
        return sorted(self._schemas)

    def versions(self, name: str) -> List[str]:
        return sorted(self._schemas.get(name.lower(), {}), key=version_key)

    def latest(self, name: str) -> Optional[str]:
        versions = self.versions(name)
        return versions[-1] if versions else None

    def has_schema(self, name: str) -> bool:
        return name.lower() in self._schemas

    def has_version(self, name: str, version: str) -> bool:
        return version.lower() in self._schemas.get(name.lower(), {})

    def tables(self, name: str, version: str) -> List[str]:
        return list(self._schemas.get(name.lower(), {}).get(version.lower(), ()))

    def as_listing(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "versions": self.versions(name),
                "tables": {v: list(self._schemas[name][v]) for v in self.versions(name)},
            }
            for name in self.names()
        }


def load_catalog_file(path: str) -> SchemaCatalog:
    """Read a catalog saved from the service's ``/models`` response."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            doc = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ServiceError(f"invalid catalog file '{path}': {exc}") from exc
    if isinstance(doc, Mapping):
        doc = doc.get("models", doc.get("data"))
    if not isinstance(doc, list):
        raise ServiceError(f"catalog file '{path}' must hold a list of models")
    return SchemaCatalog.from_models(doc)


class SchemaServiceClient:
    """Client for the data models service."""

    def __init__(self, url: str = DEFAULT_SERVICE, session=None, timeout: int = HTTP_TIMEOUT):
        self.url = (url or DEFAULT_SERVICE).rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def _get(self, path: str):
        try:
            resp = self.session.get(self.url + path, headers={"Accept": "application/json"}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ServiceError(f"data models service unreachable at {self.url}: {exc}") from exc
        if resp.status_code >= 400:
            raise ServiceError(f"data models service returned HTTP {resp.status_code} for {path}")
        return resp

    def ping(self) -> bool:
        try:
            self._get("/")
        except ServiceError as exc:
            logger.warning("%s", exc)
            return False
        return True

    def list_schemas(self) -> SchemaCatalog:
        resp = self._get("/models")
        try:
            doc = resp.json()
        except ValueError as exc:
            raise ServiceError(f"data models service returned invalid JSON: {exc}") from exc
        if isinstance(doc, Mapping):
            doc = doc.get("models", doc.get("data"))
        if not isinstance(doc, list):
            raise ServiceError("data models service returned an unexpected document")
        catalog = SchemaCatalog.from_models(doc)
        logger.debug("fetched %d schema(s) from %s", len(catalog.names()), self.url)
        return catalog


def fetch_catalog(service: str = DEFAULT_SERVICE, catalog_path: str = "", session=None) -> SchemaCatalog:
    """Catalog for one run: the local file when given, otherwise the service."""
    if catalog_path:
        return load_catalog_file(catalog_path)
    client = SchemaServiceClient(service, session=session)
    if not client.ping():
        raise ServiceError(f"data models service at {client.url} is not available")
    return client.list_schemas()
