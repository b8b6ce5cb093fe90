"""
Built-in delivery contracts.

``log`` writes each change to the application log and is mostly useful in
development; ``webhook`` POSTs the payload as JSON to a configured URL.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from changedetect.core.config import settings
from changedetect.core.domain.contracts import DeliveryContract
from changedetect.core.domain.entities import TrackedEntity
from changedetect.core.enums import Disposition, ErrorKind
from changedetect.core.exceptions import (
    DeliveryDataError, DeliveryError, DeliveryInfrastructureError, DeliveryValidationError
)
from changedetect.core.logging_config import get_logger
from changedetect.services.hashing.fingerprint import normalize_value
from changedetect.services.registry import contract_registry

# ======================== LOG TARGET ========================

class LogDeliveryContract(DeliveryContract):
    """
    Logs every delivered change.

    Config keys: ``logger`` (name), ``level`` (debug/info/warning),
    ``include_attributes`` plus the usual policy overrides.
    """

    STOP_MARKERS = (
        "Permission denied",
        "No space left",
        "Unable to create configured logger",
        "Failed to open stream",
    )

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.logger = get_logger(self.config.get("logger", "changedetect.delivery"))
        self.level = logging.getLevelName(str(self.config.get("level", "info")).upper())
        if not isinstance(self.level, int):
            self.level = logging.INFO

    def build_payload(self, entity: TrackedEntity) -> Dict[str, Any]:
        payload = {
            "entity_type": entity.entity_type,
            "entity_id": str(entity.entity_id),
            "timestamp": datetime.utcnow().isoformat(),
            "has_dependencies": bool(entity.composite_dependencies()),
        }
        if self.config.get("include_attributes", True):
            payload["attributes"] = normalize_value(
                {name: entity.get_hash_value(name) for name in entity.hashable_attributes()}
            )
        return payload

    def deliver(self, entity: TrackedEntity, payload: Any) -> bool:
        self.logger.log(
            self.level,
            f"Hash change detected for {entity.entity_type}#{entity.entity_id}",
            extra={"payload": payload}
        )
        return True

    def retry_intervals(self) -> Dict[int, int]:
        intervals = self.config.get("retry_intervals") or {1: 30, 2: 300, 3: 1800}
        return {int(attempt): int(delay) for attempt, delay in intervals.items()}

    def batch_size(self) -> int:
        return int(self.config.get("batch_size", 10))

    def inter_task_delay_ms(self) -> int:
        return int(self.config.get("delay_ms", 100))

    def max_validation_errors(self) -> int:
        return int(self.config.get("max_validation_errors", 50))

    def max_infrastructure_errors(self) -> int:
        return int(self.config.get("max_infrastructure_errors", 1))

    def classify_exception(self, exc: Exception) -> Disposition:
        message = str(exc)
        if any(marker in message for marker in self.STOP_MARKERS):
            return Disposition.STOP_JOB
        return Disposition.DEFER_RECORD

# ======================== WEBHOOK TARGET ========================

class WebhookDeliveryContract(DeliveryContract):
    """
    POSTs payloads to ``config["url"]``.

    2xx is a delivery. 401/403 stop the run (credentials are wrong for
    every record), 404/410 are data errors, other 4xx are validation
    errors, 5xx and transport failures are infrastructure errors.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, http: Optional[requests.Session] = None):
        super().__init__(config)
        self.url = self.config.get("url")
        self.headers = {"Content-Type": "application/json", **self.config.get("headers", {})}
        self.timeout = float(self.config.get("timeout", settings.publishing.webhook_timeout))
        self.http = http or requests.Session()
        self.logger = get_logger("delivery.webhook")

    def build_payload(self, entity: TrackedEntity) -> Dict[str, Any]:
        return normalize_value(super().build_payload(entity))

    def deliver(self, entity: TrackedEntity, payload: Any) -> bool:
        if not self.url:
            raise DeliveryValidationError("Webhook target has no url configured")

        try:
            response = self.http.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise DeliveryInfrastructureError(f"Webhook unreachable: {exc}", cause=exc)

        status_code = response.status_code
        if 200 <= status_code < 300:
            self.logger.debug(
                f"Delivered {entity.entity_type}#{entity.entity_id}",
                extra={"url": self.url, "response_code": status_code}
            )
            return True

        message = f"Webhook responded with status code {status_code}: {response.text[:200]}"
        if status_code in (401, 403, 407, 408, 429) or status_code >= 500:
            raise DeliveryInfrastructureError(message, response_code=status_code)
        if status_code in (404, 410):
            raise DeliveryDataError(message, response_code=status_code)
        if 400 <= status_code < 500:
            raise DeliveryValidationError(message, response_code=status_code)

        # 1xx/3xx after redirects: not delivered, try again later
        return False

    def classify_exception(self, exc: Exception) -> Disposition:
        if isinstance(exc, DeliveryError):
            if exc.response_code in (401, 403):
                return Disposition.STOP_JOB
            if exc.kind is ErrorKind.VALIDATION:
                return Disposition.FAIL_RECORD
        return Disposition.DEFER_RECORD

# ======================== REGISTRATION ========================

contract_registry.register("log", LogDeliveryContract)
contract_registry.register("webhook", WebhookDeliveryContract)

__all__ = ['LogDeliveryContract', 'WebhookDeliveryContract']
