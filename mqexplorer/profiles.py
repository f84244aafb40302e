"""Connection profiles and per-broker connection parameters."""

from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Iterable, Literal, Mapping, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import ParamsValidationError
from .models import ProviderType

_SECRET_KEYS = frozenset(
    {
        "password",
        "passcode",
        "secretAccessKey",
        "sessionToken",
        "clientSecret",
        "connectionString",
    }
)


class _Params(BaseModel):
    """Common configuration for connection-parameter variants."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    provider_type: str

    @property
    def kind(self) -> ProviderType:
        return ProviderType(self.provider_type)

    def redacted(self) -> dict[str, Any]:
        """Serialized form with secrets removed, safe for logging."""

        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        _strip_secrets(data)
        return data


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class ActiveMQParams(_Params):
    """STOMP connection settings for ActiveMQ."""

    provider_type: Literal["activemq"] = "activemq"
    host: str
    port: int = Field(default=61613, gt=0, lt=65536)
    username: str | None = None
    password: str | None = None
    connect_headers: dict[str, str] = Field(default_factory=dict)
    ssl: bool = False
    connect_timeout: float = Field(default=10.0, gt=0)
    heartbeats: tuple[int, int] = (0, 0)
    broker_name: str = "localhost"
    vhost: str | None = None


class TLSFiles(_Section):
    """Client TLS material for AMQP connections."""

    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    verify: bool = True


class RabbitMQParams(_Params):
    """AMQP and management API settings for RabbitMQ."""

    provider_type: Literal["rabbitmq"] = "rabbitmq"
    host: str
    port: int = Field(default=5672, gt=0, lt=65536)
    vhost: str = "/"
    username: str = "guest"
    password: str = "guest"
    use_tls: bool = False
    tls: TLSFiles | None = None
    management_port: int = Field(default=15672, gt=0, lt=65536)
    management_scheme: Literal["http", "https"] = "http"


class SaslSettings(_Section):
    """SASL credentials for Kafka."""

    mechanism: Literal["PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"] = "PLAIN"
    username: str
    password: str

    @field_validator("mechanism", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


class KafkaParams(_Params):
    """Bootstrap and security settings for Kafka."""

    provider_type: Literal["kafka"] = "kafka"
    brokers: tuple[str, ...] = Field(min_length=1)
    client_id: str = "mqexplorer"
    ssl: bool = False
    sasl: SaslSettings | None = None
    connection_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("brokers")
    @classmethod
    def _check_brokers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for broker in value:
            host, _, port = broker.rpartition(":")
            if not host or not port.isdigit():
                raise ValueError(f"Broker '{broker}' must look like host:port")
        return value


class MQTLSSettings(_Section):
    """TLS settings for IBM MQ client channels."""

    cipher_spec: str | None = None
    key_repository: str | None = None


class IBMMQParams(_Params):
    """Queue manager connection settings for IBM MQ."""

    provider_type: Literal["ibmmq"] = "ibmmq"
    queue_manager: str
    host: str
    port: int = Field(default=1414, gt=0, lt=65536)
    channel: str
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    tls: MQTLSSettings | None = None

    @property
    def conn_info(self) -> str:
        return f"{self.host}({self.port})"


class AWSCredentials(_Section):
    """Static AWS credentials."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None


class SQSParams(_Params):
    """Region, credentials, and retry settings for AWS SQS."""

    provider_type: Literal["awssqs"] = "awssqs"
    region: str
    credentials: AWSCredentials | None = None
    endpoint: str | None = None
    queue_url_prefix: str | None = None
    max_retries: int = Field(default=3, ge=0)
    retry_mode: Literal["standard", "adaptive", "legacy"] = "standard"
    profile: str | None = None


class AADCredential(_Section):
    """Azure AD service principal."""

    tenant_id: str
    client_id: str
    client_secret: str


class RetrySettings(_Section):
    """Retry policy applied to Service Bus clients."""

    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, gt=0)
    max_retry_delay: float = Field(default=30.0, gt=0)
    mode: Literal["exponential", "fixed"] = "exponential"


class ServiceBusParams(_Params):
    """Connection string or AAD settings for Azure Service Bus."""

    provider_type: Literal["azureservicebus"] = "azureservicebus"
    connection_string: str | None = None
    fully_qualified_namespace: str | None = None
    credential: AADCredential | None = None
    use_aad_auth: bool = False
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @model_validator(mode="after")
    def _check_auth(self) -> ServiceBusParams:
        if self.use_aad_auth or not self.connection_string:
            if not self.fully_qualified_namespace or self.credential is None:
                raise ValueError(
                    "Provide a connection string, or a fully qualified namespace with an AAD credential"
                )
        return self


class MemoryParams(_Params):
    """Selects a named in-process broker."""

    provider_type: Literal["memory"] = "memory"
    broker_name: str = "default"


def _params_tag(value: Any) -> str | None:
    if isinstance(value, Mapping):
        tag = value.get("provider_type", value.get("providerType"))
    else:
        tag = getattr(value, "provider_type", None)
    if isinstance(tag, ProviderType):
        return tag.value
    return tag if isinstance(tag, str) else None


ConnectionParams = Annotated[
    Union[
        Annotated[ActiveMQParams, Tag("activemq")],
        Annotated[RabbitMQParams, Tag("rabbitmq")],
        Annotated[KafkaParams, Tag("kafka")],
        Annotated[IBMMQParams, Tag("ibmmq")],
        Annotated[SQSParams, Tag("awssqs")],
        Annotated[ServiceBusParams, Tag("azureservicebus")],
        Annotated[MemoryParams, Tag("memory")],
    ],
    Discriminator(_params_tag),
]

PARAMS_BY_TYPE: dict[ProviderType, type[_Params]] = {
    ProviderType.ACTIVEMQ: ActiveMQParams,
    ProviderType.RABBITMQ: RabbitMQParams,
    ProviderType.KAFKA: KafkaParams,
    ProviderType.IBMMQ: IBMMQParams,
    ProviderType.AWSSQS: SQSParams,
    ProviderType.AZURESERVICEBUS: ServiceBusParams,
    ProviderType.MEMORY: MemoryParams,
}


class ConnectionProfile(BaseModel):
    """Named, immutable set of connection parameters for one broker."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    provider_type: ProviderType
    connection_params: ConnectionParams

    @model_validator(mode="before")
    @classmethod
    def _tag_params(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        provider_type = data.get("provider_type", data.get("providerType"))
        params_key = "connection_params" if "connection_params" in data else "connectionParams"
        params = data.get(params_key)
        if provider_type is not None and isinstance(params, Mapping) and _params_tag(params) is None:
            params = dict(params)
            params["provider_type"] = ProviderType(provider_type).value
            data[params_key] = params
        return data

    @model_validator(mode="after")
    def _check_tag(self) -> ConnectionProfile:
        if self.connection_params.kind is not self.provider_type:
            raise ValueError(
                f"connection_params are for '{self.connection_params.provider_type}', "
                f"not '{self.provider_type.value}'"
            )
        return self


def parse_params(provider_type: ProviderType | str, raw: Mapping[str, Any] | BaseModel) -> _Params:
    """Validate ``raw`` against the params variant for ``provider_type``."""

    try:
        kind = ProviderType(provider_type)
    except ValueError as exc:
        raise ParamsValidationError(f"Unknown provider type '{provider_type}'") from exc
    model = PARAMS_BY_TYPE[kind]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raise ParamsValidationError(
            f"Expected {model.__name__} for provider '{kind.value}', got {type(raw).__name__}"
        )
    data = dict(raw)
    tag = _params_tag(data)
    if tag is None:
        data["provider_type"] = kind.value
    elif tag != kind.value:
        raise ParamsValidationError(f"Parameters tagged '{tag}' cannot be used for provider '{kind.value}'")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ParamsValidationError(f"Invalid {kind.value} connection parameters: {exc}") from exc


def parse_profile(raw: Mapping[str, Any]) -> ConnectionProfile:
    """Validate a single profile mapping."""

    try:
        return ConnectionProfile.model_validate(raw)
    except (ValidationError, ValueError) as exc:
        name = raw.get("name", "<unnamed>")
        raise ParamsValidationError(f"Invalid connection profile '{name}': {exc}") from exc


def export_profiles(profiles: Iterable[ConnectionProfile], *, include_secrets: bool = False) -> str:
    """Serialize profiles to a JSON array, optionally keeping secrets."""

    exported: list[dict[str, Any]] = []
    for profile in profiles:
        data = profile.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.get("connectionParams", {}).pop("providerType", None)
        if not include_secrets:
            _strip_secrets(data)
        exported.append(data)
    return json.dumps(exported, indent=2)


def import_profiles(text: str) -> list[ConnectionProfile]:
    """Parse a JSON array produced by :func:`export_profiles`."""

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParamsValidationError(f"Invalid profile export: {exc}") from exc
    if not isinstance(raw, list):
        raise ParamsValidationError("Invalid import format: expected an array of connection profiles")
    profiles: list[ConnectionProfile] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ParamsValidationError("Invalid import format: every profile must be an object")
        profiles.append(parse_profile(entry))
    return profiles


def _strip_secrets(data: Any) -> None:
    if isinstance(data, dict):
        for key in list(data):
            if key in _SECRET_KEYS:
                data.pop(key)
            else:
                _strip_secrets(data[key])
    elif isinstance(data, list):
        for item in data:
            _strip_secrets(item)


__all__ = [
    "AADCredential",
    "AWSCredentials",
    "ActiveMQParams",
    "ConnectionParams",
    "ConnectionProfile",
    "IBMMQParams",
    "KafkaParams",
    "MQTLSSettings",
    "MemoryParams",
    "PARAMS_BY_TYPE",
    "RabbitMQParams",
    "RetrySettings",
    "SQSParams",
    "SaslSettings",
    "ServiceBusParams",
    "TLSFiles",
    "export_profiles",
    "import_profiles",
    "parse_params",
    "parse_profile",
]
