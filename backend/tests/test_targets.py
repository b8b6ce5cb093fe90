"""
Built-in Delivery Contract Test Suite
"""

import logging
from unittest.mock import Mock

import pytest
import requests

from changedetect.core.enums import Disposition, ErrorKind
from changedetect.core.exceptions import (
    DeliveryDataError, DeliveryInfrastructureError, DeliveryValidationError
)
from changedetect.services.publishing.targets import LogDeliveryContract, WebhookDeliveryContract
from changedetect.services.registry import contract_registry

from tests.fakes import WeatherStation

@pytest.fixture
def station():
    return WeatherStation(7, "Pier", location="Harbour")

def response(status_code, text=""):
    return Mock(status_code=status_code, text=text)

class TestLogDeliveryContract:

    def test_registered_by_name(self):
        assert isinstance(contract_registry.create("log", {}), LogDeliveryContract)
        assert {"log", "webhook"} <= set(contract_registry.list_contracts())

    def test_payload(self, station):
        payload = LogDeliveryContract().build_payload(station)

        assert payload["entity_type"] == "weather_station"
        assert payload["entity_id"] == "7"
        assert payload["has_dependencies"] is True
        assert payload["attributes"] == {"name": "Pier", "location": "Harbour", "status": "active"}

    def test_attributes_can_be_left_out(self, station):
        payload = LogDeliveryContract({"include_attributes": False}).build_payload(station)
        assert "attributes" not in payload

    def test_deliver_logs_payload(self, station, caplog):
        contract = LogDeliveryContract({"logger": "delivery.test", "level": "warning"})

        with caplog.at_level(logging.WARNING, logger="delivery.test"):
            assert contract.deliver(station, {"entity_id": "7"}) is True

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.payload == {"entity_id": "7"}
        assert "weather_station#7" in record.getMessage()

    def test_unknown_level_falls_back_to_info(self):
        assert LogDeliveryContract({"level": "chatty"}).level == logging.INFO

    def test_policy_defaults_and_overrides(self):
        contract = LogDeliveryContract()
        assert contract.retry_intervals() == {1: 30, 2: 300, 3: 1800}
        assert contract.batch_size() == 10
        assert contract.inter_task_delay_ms() == 100
        assert contract.max_validation_errors() == 50
        assert contract.max_infrastructure_errors() == 1

        tuned = LogDeliveryContract({"batch_size": 3, "retry_intervals": {"1": 5}})
        assert tuned.batch_size() == 3
        assert tuned.retry_intervals() == {1: 5}
        assert tuned.max_attempts() == 2

    @pytest.mark.parametrize("message,disposition", [
        ("Permission denied: /var/log/changes.log", Disposition.STOP_JOB),
        ("No space left on device", Disposition.STOP_JOB),
        ("formatter exploded", Disposition.DEFER_RECORD),
    ])
    def test_classify_exception(self, message, disposition):
        assert LogDeliveryContract().classify_exception(OSError(message)) is disposition

class TestWebhookDeliveryContract:

    @pytest.fixture
    def http(self):
        return Mock(spec=requests.Session)

    @pytest.fixture
    def contract(self, http):
        return WebhookDeliveryContract(
            {"url": "https://hooks.example.test/stations", "headers": {"X-Token": "abc"}, "timeout": 3},
            http=http,
        )

    def test_successful_post(self, contract, http, station):
        http.post.return_value = response(202)
        payload = contract.build_payload(station)

        assert contract.deliver(station, payload) is True
        http.post.assert_called_once_with(
            "https://hooks.example.test/stations",
            json=payload,
            headers={"Content-Type": "application/json", "X-Token": "abc"},
            timeout=3.0,
        )

    def test_missing_url_is_a_validation_error(self, http, station):
        with pytest.raises(DeliveryValidationError):
            WebhookDeliveryContract({}, http=http).deliver(station, {})
        http.post.assert_not_called()

    def test_transport_failure(self, contract, http, station):
        http.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(DeliveryInfrastructureError) as exc_info:
            contract.deliver(station, {})
        assert exc_info.value.kind is ErrorKind.INFRASTRUCTURE

    @pytest.mark.parametrize("status_code,error", [
        (500, DeliveryInfrastructureError),
        (503, DeliveryInfrastructureError),
        (429, DeliveryInfrastructureError),
        (401, DeliveryInfrastructureError),
        (404, DeliveryDataError),
        (410, DeliveryDataError),
        (400, DeliveryValidationError),
        (422, DeliveryValidationError),
    ])
    def test_status_codes(self, contract, http, station, status_code, error):
        http.post.return_value = response(status_code, "nope")

        with pytest.raises(error) as exc_info:
            contract.deliver(station, {})
        assert exc_info.value.response_code == status_code

    def test_redirect_is_not_a_delivery(self, contract, http, station):
        http.post.return_value = response(304)
        assert contract.deliver(station, {}) is False

    def test_classify_exception(self, contract):
        assert contract.classify_exception(
            DeliveryInfrastructureError("denied", response_code=403)
        ) is Disposition.STOP_JOB
        assert contract.classify_exception(
            DeliveryValidationError("bad", response_code=422)
        ) is Disposition.FAIL_RECORD
        assert contract.classify_exception(
            DeliveryInfrastructureError("down", response_code=503)
        ) is Disposition.DEFER_RECORD
        assert contract.classify_exception(RuntimeError("odd")) is Disposition.DEFER_RECORD
