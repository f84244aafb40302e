"""IBM MQ provider on pymqi, with PCF commands for administration."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from ..config import ProviderSettings
from ..errors import ManagementError, NotFoundError, ProviderConnectionError
from ..models import (
    BrowseOptions,
    ChannelInfo,
    ChannelProperties,
    ChannelStatus,
    Message,
    Payload,
    ProviderType,
    QueueInfo,
    QueueProperties,
    TopicInfo,
    TopicProperties,
    decode_payload,
    encode_payload,
)
from ..profiles import IBMMQParams
from .base import TARGETED_DELETE, BaseProvider


def _import_pymqi() -> Any:
    """Import pymqi lazily so the MQ client libraries are only needed for this broker."""
    try:
        import pymqi  # type: ignore[import-not-found]
    except ImportError as exc:
        raise ProviderConnectionError(
            "IBM MQ support requires pymqi. Install with: pip install 'mqexplorer[ibmmq]'"
        ) from exc
    return pymqi


class IBMMQProvider(BaseProvider):
    """Client-mode connection to one queue manager.

    pymqi calls block the event loop. Gets use ``MQGMO_NO_WAIT`` and return
    at once; a PCF command can hold the loop for up to the management timeout
    (5 s by default) when the command server is slow to answer.
    """

    provider_type = ProviderType.IBMMQ
    deletion_class = TARGETED_DELETE

    def __init__(
        self,
        *,
        settings: ProviderSettings | None = None,
        logger: Any = None,
        pymqi_module: Any = None,
    ) -> None:
        super().__init__(settings=settings, logger=logger)
        self._mq = pymqi_module
        self._qmgr: Any = None

    # connection ----------------------------------------------------------------

    async def _connect(self, params: IBMMQParams) -> None:
        mq = self._mq = self._mq or _import_pymqi()
        try:
            if params.use_tls:
                self._qmgr = self._connect_tls(params)
            else:
                self._qmgr = mq.connect(
                    params.queue_manager,
                    params.channel,
                    params.conn_info,
                    params.username,
                    params.password,
                )
        except mq.MQMIError as exc:
            raise ProviderConnectionError(
                f"Could not connect to queue manager '{params.queue_manager}' at {params.conn_info}: {exc}"
            ) from exc

    def _connect_tls(self, params: IBMMQParams) -> Any:
        mq = self._mq
        cd = mq.CD()
        cd.ChannelName = params.channel.encode()
        cd.ConnectionName = params.conn_info.encode()
        cd.ChannelType = mq.CMQXC.MQCHT_CLNTCONN
        cd.TransportType = mq.CMQXC.MQXPT_TCP
        sco = mq.SCO()
        if params.tls and params.tls.cipher_spec:
            cd.SSLCipherSpec = params.tls.cipher_spec.encode()
        if params.tls and params.tls.key_repository:
            sco.KeyRepository = params.tls.key_repository.encode()
        qmgr = mq.QueueManager(None)
        qmgr.connect_with_options(
            params.queue_manager,
            user=params.username,
            password=params.password,
            cd=cd,
            sco=sco,
        )
        return qmgr

    async def _disconnect(self) -> None:
        qmgr, self._qmgr = self._qmgr, None
        await self._release("queue manager connection", qmgr.disconnect if qmgr else None)

    # listings ------------------------------------------------------------------

    async def _list_queues(self, filter: str | None) -> list[QueueInfo]:
        CMQC = self._mq.CMQC
        rows = self._pcf("MQCMD_INQUIRE_Q", {CMQC.MQCA_Q_NAME: b"*", CMQC.MQIA_Q_TYPE: CMQC.MQQT_LOCAL})
        queues = []
        for row in rows:
            name = _text(row.get(CMQC.MQCA_Q_NAME))
            if not name or name.startswith(("SYSTEM.", "AMQ.")):
                continue
            queues.append(
                QueueInfo(
                    name=name,
                    depth=row.get(CMQC.MQIA_CURRENT_Q_DEPTH),
                    type="Local",
                    description=_text(row.get(CMQC.MQCA_Q_DESC)),
                )
            )
        return queues

    async def _list_topics(self, filter: str | None) -> list[TopicInfo]:
        CMQC = self._mq.CMQC
        rows = self._pcf("MQCMD_INQUIRE_TOPIC", {CMQC.MQCA_TOPIC_NAME: b"*"})
        topics = []
        for row in rows:
            name = _text(row.get(CMQC.MQCA_TOPIC_NAME))
            if not name or name.startswith("SYSTEM."):
                continue
            topics.append(
                TopicInfo(
                    name=name,
                    topic_string=_text(row.get(CMQC.MQCA_TOPIC_STRING)),
                    type="Local",
                    description=_text(row.get(CMQC.MQCA_TOPIC_DESC)),
                    status="Active",
                )
            )
        return topics

    async def _queue_properties(self, queue_name: str) -> QueueProperties:
        CMQC = self._mq.CMQC
        row = self._pcf_one("MQCMD_INQUIRE_Q", {CMQC.MQCA_Q_NAME: queue_name.encode()}, f"Queue '{queue_name}'")
        get_inhibited = row.get(CMQC.MQIA_INHIBIT_GET) == CMQC.MQQA_GET_INHIBITED
        put_inhibited = row.get(CMQC.MQIA_INHIBIT_PUT) == CMQC.MQQA_PUT_INHIBITED
        return QueueProperties(
            name=queue_name,
            depth=row.get(CMQC.MQIA_CURRENT_Q_DEPTH),
            type="Local",
            description=_text(row.get(CMQC.MQCA_Q_DESC)),
            status="Inhibited" if get_inhibited or put_inhibited else "Active",
            max_depth=row.get(CMQC.MQIA_MAX_Q_DEPTH),
            creation_time=_mq_datetime(row.get(CMQC.MQCA_CREATION_DATE), row.get(CMQC.MQCA_CREATION_TIME)),
            attributes={
                "open_input_count": row.get(CMQC.MQIA_OPEN_INPUT_COUNT),
                "open_output_count": row.get(CMQC.MQIA_OPEN_OUTPUT_COUNT),
                "get_inhibited": get_inhibited,
                "put_inhibited": put_inhibited,
                "max_message_length": row.get(CMQC.MQIA_MAX_MSG_LENGTH),
                "default_persistence": row.get(CMQC.MQIA_DEF_PERSISTENCE),
                "usage": row.get(CMQC.MQIA_USAGE),
            },
        )

    async def _topic_properties(self, topic_name: str) -> TopicProperties:
        CMQC = self._mq.CMQC
        row = self._pcf_one("MQCMD_INQUIRE_TOPIC", {CMQC.MQCA_TOPIC_NAME: topic_name.encode()}, f"Topic '{topic_name}'")
        topic_string = _text(row.get(CMQC.MQCA_TOPIC_STRING))
        status: dict[int, Any] = {}
        if topic_string:
            rows = self._pcf("MQCMD_INQUIRE_TOPIC_STATUS", {CMQC.MQCA_TOPIC_STRING: topic_string.encode()})
            status = rows[0] if rows else {}
        return TopicProperties(
            name=topic_name,
            topic_string=topic_string,
            type="Local",
            description=_text(row.get(CMQC.MQCA_TOPIC_DESC)),
            status="Active",
            creation_time=_mq_datetime(row.get(CMQC.MQCA_CREATION_DATE), row.get(CMQC.MQCA_CREATION_TIME)),
            publish_count=status.get(CMQC.MQIA_PUB_COUNT),
            subscription_count=status.get(CMQC.MQIA_SUB_COUNT),
            attributes={"topic_type": row.get(CMQC.MQIA_TOPIC_TYPE)},
        )

    # channels ------------------------------------------------------------------

    async def _list_channels(self) -> list[ChannelInfo]:
        CMQCFC = self._mq.CMQCFC
        rows = self._pcf("MQCMD_INQUIRE_CHANNEL", {CMQCFC.MQCACH_CHANNEL_NAME: b"*"})
        channels = []
        for row in rows:
            name = _text(row.get(CMQCFC.MQCACH_CHANNEL_NAME))
            if not name or name.startswith("SYSTEM."):
                continue
            channels.append(
                ChannelInfo(
                    name=name,
                    type=_channel_type(self._mq, row.get(CMQCFC.MQIACH_CHANNEL_TYPE)),
                    connection_name=_text(row.get(CMQCFC.MQCACH_CONNECTION_NAME)) or None,
                    status=self._channel_status(name),
                    description=_text(row.get(CMQCFC.MQCACH_DESC)),
                )
            )
        return channels

    async def _channel_properties(self, channel_name: str) -> ChannelProperties:
        CMQCFC = self._mq.CMQCFC
        row = self._pcf_one(
            "MQCMD_INQUIRE_CHANNEL",
            {CMQCFC.MQCACH_CHANNEL_NAME: channel_name.encode()},
            f"Channel '{channel_name}'",
        )
        return ChannelProperties(
            name=channel_name,
            type=_channel_type(self._mq, row.get(CMQCFC.MQIACH_CHANNEL_TYPE)),
            connection_name=_text(row.get(CMQCFC.MQCACH_CONNECTION_NAME)) or None,
            status=self._channel_status(channel_name),
            description=_text(row.get(CMQCFC.MQCACH_DESC)),
            max_message_length=row.get(CMQCFC.MQIACH_MAX_MSG_LENGTH),
            heartbeat_interval=row.get(CMQCFC.MQIACH_HB_INTERVAL),
            batch_size=row.get(CMQCFC.MQIACH_BATCH_SIZE),
            attributes={
                "transmission_queue": _text(row.get(CMQCFC.MQCACH_XMIT_Q_NAME)) or None,
                "mca_user": _text(row.get(CMQCFC.MQCACH_MCA_USER_ID)) or None,
            },
        )

    async def _start_channel(self, channel_name: str) -> None:
        CMQCFC = self._mq.CMQCFC
        self._pcf("MQCMD_START_CHANNEL", {CMQCFC.MQCACH_CHANNEL_NAME: channel_name.encode()}, f"Channel '{channel_name}'")

    async def _stop_channel(self, channel_name: str) -> None:
        CMQCFC = self._mq.CMQCFC
        self._pcf("MQCMD_STOP_CHANNEL", {CMQCFC.MQCACH_CHANNEL_NAME: channel_name.encode()}, f"Channel '{channel_name}'")

    def _channel_status(self, channel_name: str) -> ChannelStatus:
        CMQCFC = self._mq.CMQCFC
        try:
            rows = self._pcf("MQCMD_INQUIRE_CHANNEL_STATUS", {CMQCFC.MQCACH_CHANNEL_NAME: channel_name.encode()})
        except self._mq.MQMIError as exc:
            if exc.reason == CMQCFC.MQRCCF_CHL_STATUS_NOT_FOUND:
                return ChannelStatus.INACTIVE
            raise
        if not rows:
            return ChannelStatus.INACTIVE
        return _CHANNEL_STATES.get(_channel_state_name(CMQCFC, rows[0].get(CMQCFC.MQIACH_CHANNEL_STATUS)), ChannelStatus.UNKNOWN)

    # messages ------------------------------------------------------------------

    async def _iter_messages(self, queue_name: str, options: BrowseOptions) -> AsyncIterator[Message]:
        mq = self._mq
        CMQC = mq.CMQC
        queue = self._open(queue_name, CMQC.MQOO_BROWSE | CMQC.MQOO_FAIL_IF_QUIESCING)
        try:
            browse = CMQC.MQGMO_BROWSE_FIRST
            while True:
                md = mq.MD()
                gmo = mq.GMO()
                gmo.Options = browse | CMQC.MQGMO_NO_WAIT | CMQC.MQGMO_FAIL_IF_QUIESCING
                try:
                    body = queue.get(None, md, gmo)
                except mq.MQMIError as exc:
                    if exc.reason == CMQC.MQRC_NO_MSG_AVAILABLE:
                        return
                    raise
                browse = CMQC.MQGMO_BROWSE_NEXT
                yield _to_message(CMQC, md, body)
        finally:
            await self._release(f"queue '{queue_name}'", queue.close)

    async def _delete(self, queue_name: str, message: Message) -> None:
        mq = self._mq
        CMQC = mq.CMQC
        queue = self._open(queue_name, CMQC.MQOO_INPUT_SHARED | CMQC.MQOO_FAIL_IF_QUIESCING)
        try:
            md = mq.MD()
            md.MsgId = bytes.fromhex(message.id)
            gmo = mq.GMO()
            gmo.Version = CMQC.MQGMO_VERSION_2
            gmo.Options = CMQC.MQGMO_NO_WAIT | CMQC.MQGMO_FAIL_IF_QUIESCING | CMQC.MQGMO_ACCEPT_TRUNCATED_MSG
            gmo.MatchOptions = CMQC.MQMO_MATCH_MSG_ID
            try:
                queue.get(None, md, gmo)
            except mq.MQMIError as exc:
                if exc.reason == CMQC.MQRC_NO_MSG_AVAILABLE:
                    raise NotFoundError(f"Message '{message.id}' is no longer on '{queue_name}'") from exc
                if exc.reason != CMQC.MQRC_TRUNCATED_MSG_ACCEPTED:
                    raise
        finally:
            await self._release(f"queue '{queue_name}'", queue.close)

    async def _put(self, queue_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        CMQC = self._mq.CMQC
        queue = self._open(queue_name, CMQC.MQOO_OUTPUT | CMQC.MQOO_FAIL_IF_QUIESCING)
        try:
            queue.put(encode_payload(payload), self._descriptor(payload, properties))
        finally:
            await self._release(f"queue '{queue_name}'", queue.close)

    async def _publish(self, topic_name: str, payload: Payload, properties: dict[str, Any]) -> None:
        mq = self._mq
        topic = mq.Topic(self._qmgr, topic_string=topic_name)
        topic.open(open_opts=mq.CMQC.MQOO_OUTPUT | mq.CMQC.MQOO_FAIL_IF_QUIESCING)
        try:
            topic.pub(encode_payload(payload), self._descriptor(payload, properties))
        finally:
            await self._release(f"topic '{topic_name}'", topic.close)

    async def _clear(self, queue_name: str) -> None:
        CMQC = self._mq.CMQC
        self._pcf("MQCMD_CLEAR_Q", {CMQC.MQCA_Q_NAME: queue_name.encode()}, f"Queue '{queue_name}'")

    # helpers -------------------------------------------------------------------

    def _open(self, queue_name: str, options: int) -> Any:
        mq = self._mq
        try:
            return mq.Queue(self._qmgr, queue_name, options)
        except mq.MQMIError as exc:
            if exc.reason == mq.CMQC.MQRC_UNKNOWN_OBJECT_NAME:
                raise NotFoundError(f"Queue '{queue_name}' does not exist") from exc
            raise

    def _pcf(self, command: str, arguments: dict[int, Any], subject: str | None = None) -> list[dict[int, Any]]:
        mq = self._mq
        pcf = mq.PCFExecute(
            self._qmgr,
            disconnect_on_exit=False,
            response_wait_interval=int(self._settings.management_timeout * 1000),
        )
        try:
            return list(getattr(pcf, command)(arguments) or ())
        except mq.MQMIError as exc:
            if subject and exc.reason == mq.CMQC.MQRC_UNKNOWN_OBJECT_NAME:
                raise NotFoundError(f"{subject} does not exist") from exc
            raise
        finally:
            pcf.disconnect()

    def _pcf_one(self, command: str, arguments: dict[int, Any], subject: str) -> dict[int, Any]:
        rows = self._pcf(command, arguments, subject)
        if not rows:
            raise ManagementError(f"{command} returned no data for {subject}")
        return rows[0]

    def _descriptor(self, payload: Payload, properties: dict[str, Any]) -> Any:
        mq = self._mq
        CMQC = mq.CMQC
        md = mq.MD()
        if isinstance(payload, str):
            md.Format = CMQC.MQFMT_STRING
        message_id = properties.get("message_id")
        md.MsgId = _fixed(message_id) if message_id else uuid.uuid4().bytes.ljust(24, b"\0")
        if properties.get("correlation_id"):
            md.CorrelId = _fixed(properties["correlation_id"])
        if properties.get("reply_to"):
            md.ReplyToQ = str(properties["reply_to"]).encode()
        if properties.get("priority") is not None:
            md.Priority = int(properties["priority"])
        if properties.get("delivery_mode") is not None:
            persistent = int(properties["delivery_mode"]) == 2
            md.Persistence = CMQC.MQPER_PERSISTENT if persistent else CMQC.MQPER_NOT_PERSISTENT
        if properties.get("expiration") is not None:
            md.Expiry = max(1, int(properties["expiration"]) // 100)
        return md


_CHANNEL_STATES = {
    "MQCHS_INACTIVE": ChannelStatus.INACTIVE,
    "MQCHS_RUNNING": ChannelStatus.RUNNING,
    "MQCHS_STARTING": ChannelStatus.STARTING,
    "MQCHS_BINDING": ChannelStatus.STARTING,
    "MQCHS_INITIALIZING": ChannelStatus.STARTING,
    "MQCHS_REQUESTING": ChannelStatus.STARTING,
    "MQCHS_STOPPING": ChannelStatus.STOPPING,
    "MQCHS_RETRYING": ChannelStatus.RETRYING,
    "MQCHS_PAUSED": ChannelStatus.RETRYING,
    "MQCHS_STOPPED": ChannelStatus.STOPPED,
}

_CHANNEL_TYPES = {
    "MQCHT_SENDER": "Sender",
    "MQCHT_SERVER": "Server",
    "MQCHT_RECEIVER": "Receiver",
    "MQCHT_REQUESTER": "Requester",
    "MQCHT_SVRCONN": "Server-connection",
    "MQCHT_CLNTCONN": "Client-connection",
    "MQCHT_CLUSRCVR": "Cluster-receiver",
    "MQCHT_CLUSSDR": "Cluster-sender",
    "MQCHT_AMQP": "AMQP",
}


def _channel_state_name(CMQCFC: Any, value: Any) -> str | None:
    for name in _CHANNEL_STATES:
        if getattr(CMQCFC, name, None) == value:
            return name
    return None


def _channel_type(mq: Any, value: Any) -> str | None:
    if value is None:
        return None
    for name, label in _CHANNEL_TYPES.items():
        if getattr(mq.CMQXC, name, None) == value:
            return label
    return str(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return str(value).strip().strip("\0")


def _fixed(value: Any) -> bytes:
    raw = value if isinstance(value, bytes) else str(value).encode("utf-8")
    return raw[:24].ljust(24, b"\0")


def _mq_datetime(date: Any, time: Any) -> datetime | None:
    date_text, time_text = _text(date), _text(time)
    if not date_text:
        return None
    try:
        stamp = datetime.strptime(f"{date_text} {time_text or '00.00.00'}"[:19], "%Y-%m-%d %H.%M.%S")
    except ValueError:
        return None
    return stamp.replace(tzinfo=timezone.utc)


def _to_message(CMQC: Any, md: Any, body: bytes) -> Message:
    correlation = bytes(md.CorrelId)
    properties: dict[str, Any] = {
        "format": _text(md.Format),
        "persistence": md.Persistence,
        "delivery_mode": 2 if md.Persistence == CMQC.MQPER_PERSISTENT else 1,
        "priority": md.Priority,
        "put_date": _text(md.PutDate),
        "put_time": _text(md.PutTime),
        "reply_to_queue": _text(md.ReplyToQ),
        "reply_to_queue_manager": _text(md.ReplyToQMgr),
        "put_application_name": _text(md.PutApplName),
        "user_identifier": _text(md.UserIdentifier),
        "backout_count": md.BackoutCount,
        "expiry": md.Expiry,
        "encoding": md.Encoding,
        "coded_char_set_id": md.CodedCharSetId,
    }
    if properties["reply_to_queue"]:
        properties["reply_to"] = properties["reply_to_queue"]
    return Message(
        id=bytes(md.MsgId).hex(),
        payload=decode_payload(body),
        correlation_id=correlation.hex() if correlation.strip(b"\0") else None,
        timestamp=_put_timestamp(_text(md.PutDate), _text(md.PutTime)),
        properties=properties,
    )


def _put_timestamp(put_date: str, put_time: str) -> datetime | None:
    if len(put_date) != 8 or len(put_time) < 6:
        return None
    try:
        stamp = datetime.strptime(put_date + put_time[:6], "%Y%m%d%H%M%S")
    except ValueError:
        return None
    hundredths = int(put_time[6:8]) if put_time[6:8].isdigit() else 0
    return stamp.replace(microsecond=hundredths * 10_000, tzinfo=timezone.utc)


__all__ = ["IBMMQProvider"]
