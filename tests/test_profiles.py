"""Tests for connection profiles and parameter validation."""

from __future__ import annotations

import json

import pytest

from mqexplorer.errors import ParamsValidationError, ProviderConnectionError
from mqexplorer.models import ProviderType
from mqexplorer.profiles import (
    ConnectionProfile,
    IBMMQParams,
    KafkaParams,
    RabbitMQParams,
    ServiceBusParams,
    export_profiles,
    import_profiles,
    parse_params,
    parse_profile,
)


def test_parse_params_applies_defaults() -> None:
    params = parse_params("rabbitmq", {"host": "localhost"})

    assert isinstance(params, RabbitMQParams)
    assert params.port == 5672
    assert params.vhost == "/"
    assert params.management_port == 15672
    assert params.kind is ProviderType.RABBITMQ


def test_parse_params_accepts_camel_case_keys() -> None:
    params = parse_params(
        ProviderType.IBMMQ,
        {"queueManager": "QM1", "host": "mq.local", "channel": "DEV.APP.SVRCONN"},
    )

    assert isinstance(params, IBMMQParams)
    assert params.conn_info == "mq.local(1414)"


def test_parse_params_rejects_bad_broker_address() -> None:
    with pytest.raises(ParamsValidationError) as excinfo:
        parse_params("kafka", {"brokers": ["kafka-without-port"]})

    assert isinstance(excinfo.value, ProviderConnectionError)


def test_parse_params_rejects_mismatched_tag() -> None:
    with pytest.raises(ParamsValidationError, match="cannot be used"):
        parse_params("kafka", {"provider_type": "rabbitmq", "host": "localhost"})


def test_parse_params_rejects_unknown_provider() -> None:
    with pytest.raises(ParamsValidationError, match="Unknown provider type"):
        parse_params("zeromq", {})


def test_servicebus_requires_an_auth_mode() -> None:
    with pytest.raises(ParamsValidationError):
        parse_params("azureservicebus", {})

    params = parse_params(
        "azureservicebus",
        {
            "fullyQualifiedNamespace": "demo.servicebus.windows.net",
            "useAadAuth": True,
            "credential": {"tenantId": "t", "clientId": "c", "clientSecret": "s"},
        },
    )
    assert isinstance(params, ServiceBusParams)
    assert params.retry.max_retries == 3


def test_profile_tags_params_from_provider_type() -> None:
    profile = parse_profile(
        {
            "name": "Local Kafka",
            "providerType": "kafka",
            "connectionParams": {"brokers": ["localhost:9092"]},
        }
    )

    assert isinstance(profile.connection_params, KafkaParams)
    assert profile.connection_params.client_id == "mqexplorer"
    assert profile.id


def test_profile_rejects_params_for_another_provider() -> None:
    with pytest.raises(ParamsValidationError):
        parse_profile(
            {
                "name": "Mismatch",
                "provider_type": "kafka",
                "connection_params": {"provider_type": "rabbitmq", "host": "localhost"},
            }
        )


def test_export_strips_secrets_by_default() -> None:
    profile = ConnectionProfile(
        name="Rabbit",
        provider_type=ProviderType.RABBITMQ,
        connection_params=RabbitMQParams(host="localhost", password="hunter2"),
    )

    exported = json.loads(export_profiles([profile]))
    with_secrets = json.loads(export_profiles([profile], include_secrets=True))

    assert "password" not in exported[0]["connectionParams"]
    assert exported[0]["providerType"] == "rabbitmq"
    assert with_secrets[0]["connectionParams"]["password"] == "hunter2"


def test_import_round_trips_exported_profiles() -> None:
    profile = ConnectionProfile(
        name="Rabbit",
        provider_type=ProviderType.RABBITMQ,
        connection_params=RabbitMQParams(host="broker", vhost="/prod"),
    )

    [restored] = import_profiles(export_profiles([profile], include_secrets=True))

    assert restored == profile


def test_import_rejects_non_array_documents() -> None:
    with pytest.raises(ParamsValidationError, match="expected an array"):
        import_profiles(json.dumps({"name": "single"}))
    with pytest.raises(ParamsValidationError, match="must be an object"):
        import_profiles(json.dumps(["not-an-object"]))
    with pytest.raises(ParamsValidationError):
        import_profiles("{not json")


def test_redacted_params_hide_credentials() -> None:
    params = parse_params(
        "awssqs",
        {"region": "eu-west-1", "credentials": {"accessKeyId": "AKIA", "secretAccessKey": "secret"}},
    )

    redacted = params.redacted()

    assert redacted["credentials"] == {"accessKeyId": "AKIA"}
    assert redacted["region"] == "eu-west-1"
