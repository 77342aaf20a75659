"""
Service registry storage

Keeps the set of registered services. The in-memory repository serves
tests and one-shot runs; the JSON file repository persists registrations
between runs without an external database.
"""

import json
import logging
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .errors import UnknownServiceError
from .models import HealthScore, Service, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class ServiceRepository(Protocol):
    """Protocol for service registries"""

    def create(self, name: str, metrics_url: str = "", repo_url: str = "") -> Service:
        """Register a service, returning the existing record if the name is taken"""
        ...

    def get(self, service_id: str) -> Service:
        ...

    def list(self) -> list[Service]:
        ...

    def update(self, service: Service) -> Service:
        ...

    def record_evaluation(
        self, service_id: str, health: Optional[HealthScore], checked_at: datetime
    ) -> Service:
        ...


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug or "service"


class InMemoryServiceRepository:
    """Service registry held in process memory"""

    def __init__(self, services: Optional[list[Service]] = None):
        self._services: dict[str, Service] = {s.id: s for s in services or []}
        self._lock = threading.RLock()

    def create(self, name: str, metrics_url: str = "", repo_url: str = "") -> Service:
        name = name.strip()
        if not name:
            raise ValueError("Service name must not be empty")

        with self._lock:
            for service in self._services.values():
                if service.name == name:
                    logger.debug(f"Service '{name}' already registered as {service.id}")
                    return service

            service = Service(
                id=self._unique_id(slugify(name)),
                name=name,
                metrics_url=metrics_url,
                repo_url=repo_url,
            )
            self._services[service.id] = service
            self._changed()

        logger.info(f"Registered service '{name}' as {service.id}")
        return service

    def get(self, service_id: str) -> Service:
        with self._lock:
            service = self._services.get(service_id)
        if service is None:
            raise UnknownServiceError(service_id)
        return service

    def list(self) -> list[Service]:
        with self._lock:
            return sorted(self._services.values(), key=lambda s: (s.registered_at, s.id))

    def update(self, service: Service) -> Service:
        with self._lock:
            if service.id not in self._services:
                raise UnknownServiceError(service.id)
            self._services[service.id] = service
            self._changed()
        return service

    def record_evaluation(
        self, service_id: str, health: Optional[HealthScore], checked_at: datetime
    ) -> Service:
        """Stamp a service with the outcome of its latest successful cycle"""
        update: dict = {"last_checked": checked_at}
        if health is not None:
            update["health"] = health.status
            update["health_score"] = health.score

        with self._lock:
            service = self.get(service_id).model_copy(update=update)
            return self.update(service)

    def _unique_id(self, base: str) -> str:
        candidate, suffix = base, 2
        while candidate in self._services:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _changed(self) -> None:
        """Hook for persistent subclasses; called with the lock held"""


class JsonFileServiceRepository(InMemoryServiceRepository):
    """Service registry persisted to a JSON file after every change"""

    def __init__(self, path: str = ".servicepulse/services.json"):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> list[Service]:
        if not self.path.exists():
            return []

        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)

        services = [Service.model_validate(item) for item in data.get("services", [])]
        logger.debug(f"Loaded {len(services)} services from {self.path}")
        return services

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "last_updated": utcnow().isoformat(),
            "services": [s.to_dict() for s in self._services.values()],
        }

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(self.path)
        logger.debug(f"Saved {len(data['services'])} services to {self.path}")
