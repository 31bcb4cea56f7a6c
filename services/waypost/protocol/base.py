"""
Message base class for the Waypost control-plane protocol.

Every wire message is a pydantic model deriving from ProtoModel. Fields
declare their protobuf field number with tag(), and oneof groups are single
attributes typed as a union of variant classes and listed in __oneofs__.

The wire codec is protobuf binary (proto3). Each ProtoModel class is
described to a private descriptor pool the first time it is encoded or
decoded, and the message class google.protobuf builds from that descriptor
does the serialization: default scalars are omitted, datetimes travel as
google.protobuf.Timestamp, enums as their integer value and dict[str, str]
fields as maps. model_dump() keeps the proto3 JSON shape, with a oneof
written as the key of the variant that is set.
"""

import itertools
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import IntEnum
from types import NoneType, UnionType
from typing import Any, ClassVar, NamedTuple, TypeVar, Union, get_args, get_origin

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory, timestamp_pb2
from google.protobuf.message import Message
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    SerializerFunctionWrapHandler,
    model_serializer,
    model_validator,
)

M = TypeVar("M", bound="ProtoModel")

FieldProto = descriptor_pb2.FieldDescriptorProto

_SCALAR_TYPES: dict[type, int] = {
    str: FieldProto.TYPE_STRING,
    int: FieldProto.TYPE_INT64,
    bool: FieldProto.TYPE_BOOL,
    bytes: FieldProto.TYPE_BYTES,
}
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def tag(
    number: int,
    default: Any = None,
    *,
    default_factory: Callable[[], Any] | None = None,
) -> Any:
    """Declare a message field together with its protobuf field number."""
    extra = {"proto_number": number}
    if default_factory is not None:
        return Field(default_factory=default_factory, json_schema_extra=extra)
    return Field(default=default, json_schema_extra=extra)


class ProtoModel(BaseModel):
    """Base class for all protocol messages.

    Subclasses list their oneof groups in ``__oneofs__`` as
    ``{attribute: {variant_key: (variant_class, field_number)}}``.
    """

    model_config = ConfigDict(
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    __oneofs__: ClassVar[dict[str, dict[str, tuple[type, int]]]] = {}

    @model_validator(mode="before")
    @classmethod
    def _collapse_oneofs(cls, data: Any) -> Any:
        """Fold variant keys into their oneof attribute.

        When several variants of one group are present the last one wins,
        matching protobuf decoding of repeated oneof members.
        """
        if not cls.__oneofs__ or not isinstance(data, dict):
            return data

        data = dict(data)
        for name, variants in cls.__oneofs__.items():
            chosen: Any = None
            present = False
            for key in list(data):
                if key == name:
                    chosen = data.pop(key)
                    present = True
                elif key in variants:
                    variant_cls = variants[key][0]
                    value = data.pop(key)
                    if not isinstance(value, variant_cls):
                        value = variant_cls.model_validate(value if value is not None else {})
                    chosen = value
                    present = True
            if present:
                data[name] = chosen
        return data

    @model_serializer(mode="wrap")
    def _expand_oneofs(
        self, handler: SerializerFunctionWrapHandler, info: SerializationInfo
    ) -> dict[str, Any]:
        out = handler(self)
        for name in self.__oneofs__:
            value = out.pop(name, None)
            key = self.which(name)
            if key is not None:
                out[key] = value if value is not None else {}
        return out

    def which(self, oneof: str) -> str | None:
        """Return the variant key set for a oneof group, or None when unset."""
        value = getattr(self, oneof)
        if value is None:
            return None
        for key, (variant_cls, _) in self.__oneofs__[oneof].items():
            if type(value) is variant_cls:
                return key
        raise TypeError(f"{type(value).__name__} is not a variant of {type(self).__name__}.{oneof}")

    def encode(self) -> bytes:
        """Serialize to protobuf wire bytes."""
        message = _message_class(type(self))()
        _to_wire(self, message)
        return message.SerializeToString(deterministic=True)

    @classmethod
    def decode(cls: type[M], data: bytes) -> M:
        """Deserialize protobuf wire bytes, restoring defaults for omitted fields.

        Unknown field numbers are skipped.

        Raises:
            google.protobuf.message.DecodeError: If data is not a valid
                encoding of this message.
            pydantic.ValidationError: If a decoded value does not fit its
                field, such as an enum number the model does not define.
        """
        message = _message_class(cls)()
        message.ParseFromString(data)
        return _from_wire(cls, message)

    @classmethod
    def field_numbers(cls) -> dict[str, int]:
        """Return the protobuf field number of every field and oneof variant."""
        return {field.name: field.number for field in _wire_fields(cls)}


# --- Descriptors ---


class _WireField(NamedTuple):
    """One protobuf field of a model: a plain attribute or a oneof variant."""

    name: str
    number: int
    element: Any
    repeated: bool = False
    is_map: bool = False
    oneof: str | None = None


def _unwrap(annotation: Any) -> tuple[Any, bool, bool]:
    """Split a field annotation into (element type, repeated, map)."""
    origin = get_origin(annotation)
    if origin in (Union, UnionType):
        args = [arg for arg in get_args(annotation) if arg is not NoneType]
        if len(args) != 1:
            raise TypeError(f"Unsupported union field type {annotation!r}")
        return _unwrap(args[0])
    if origin is list:
        return get_args(annotation)[0], True, False
    if origin is dict:
        if get_args(annotation) != (str, str):
            raise TypeError(f"Only dict[str, str] maps are supported, got {annotation!r}")
        return str, False, True
    return annotation, False, False


_fields_cache: dict[type, list[_WireField]] = {}


def _wire_fields(cls: type[ProtoModel]) -> list[_WireField]:
    try:
        return _fields_cache[cls]
    except KeyError:
        pass

    fields: list[_WireField] = []
    for name, info in cls.model_fields.items():
        if name in cls.__oneofs__:
            for key, (variant_cls, number) in cls.__oneofs__[name].items():
                fields.append(_WireField(key, number, variant_cls, oneof=name))
            continue
        extra = info.json_schema_extra
        if not isinstance(extra, dict) or "proto_number" not in extra:
            continue
        element, repeated, is_map = _unwrap(info.annotation)
        fields.append(_WireField(name, extra["proto_number"], element, repeated, is_map))
    _fields_cache[cls] = fields
    return fields


def _is_model(element: Any) -> bool:
    return isinstance(element, type) and issubclass(element, ProtoModel)


def _is_composite(element: Any) -> bool:
    return element is datetime or _is_model(element)


def _map_entry_name(field_name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in field_name.split("_")) + "Entry"


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)

# ProtoModel class -> (full message name, descriptor file name)
_described: dict[type, tuple[str, str]] = {}
_describing: set[type] = set()
_taken_names: set[str] = set()
_message_classes: dict[type, type[Message]] = {}


def _field_type(element: Any) -> tuple[int, str, str | None]:
    """Return the proto type, type name and file dependency for an element type."""
    if element is datetime:
        return FieldProto.TYPE_MESSAGE, ".google.protobuf.Timestamp", timestamp_pb2.DESCRIPTOR.name
    if _is_model(element):
        full_name, file_name = _describe(element)
        return FieldProto.TYPE_MESSAGE, f".{full_name}", file_name
    if isinstance(element, type) and issubclass(element, IntEnum):
        return FieldProto.TYPE_INT32, "", None
    if element in _SCALAR_TYPES:
        return _SCALAR_TYPES[element], "", None
    raise TypeError(f"Unsupported field type {element!r}")


def _describe(cls: type[ProtoModel]) -> tuple[str, str]:
    """Add a descriptor for cls to the pool, after every message it refers to."""
    if cls in _described:
        return _described[cls]
    if cls in _describing:
        raise TypeError(f"{cls.__qualname__} refers to itself; recursive messages are unsupported")

    _describing.add(cls)
    try:
        package = cls.__module__
        base_name = re.sub(r"\W", "_", cls.__qualname__)
        name = base_name
        for n in itertools.count(2):
            if f"{package}.{name}" not in _taken_names:
                break
            name = f"{base_name}_{n}"
        full_name = f"{package}.{name}"

        file = descriptor_pb2.FileDescriptorProto(
            name=f"{full_name.replace('.', '/')}.proto",
            package=package,
            syntax="proto3",
        )
        msg = file.message_type.add(name=name)
        dependencies: set[str] = set()
        oneofs: dict[str, int] = {}

        for field in _wire_fields(cls):
            proto = msg.field.add(
                name=field.name,
                number=field.number,
                label=FieldProto.LABEL_REPEATED
                if field.repeated or field.is_map
                else FieldProto.LABEL_OPTIONAL,
            )
            if field.oneof is not None:
                proto.oneof_index = oneofs.setdefault(field.oneof, len(oneofs))

            if field.is_map:
                entry = msg.nested_type.add(name=_map_entry_name(field.name))
                entry.options.map_entry = True
                for number, entry_field in enumerate(("key", "value"), start=1):
                    entry.field.add(
                        name=entry_field,
                        number=number,
                        label=FieldProto.LABEL_OPTIONAL,
                        type=FieldProto.TYPE_STRING,
                    )
                proto.type = FieldProto.TYPE_MESSAGE
                proto.type_name = f".{full_name}.{entry.name}"
                continue

            proto.type, type_name, dependency = _field_type(field.element)
            if type_name:
                proto.type_name = type_name
            if dependency is not None:
                dependencies.add(dependency)

        for oneof in oneofs:
            msg.oneof_decl.add(name=oneof)
        file.dependency.extend(sorted(dependencies))

        _pool.AddSerializedFile(file.SerializeToString())
        _taken_names.add(full_name)
        _described[cls] = (full_name, file.name)
        return _described[cls]
    finally:
        _describing.discard(cls)


def _message_class(cls: type[ProtoModel]) -> type[Message]:
    try:
        return _message_classes[cls]
    except KeyError:
        pass
    full_name, _ = _describe(cls)
    descriptor = _pool.FindMessageTypeByName(full_name)
    _message_classes[cls] = message_factory.GetMessageClass(descriptor)
    return _message_classes[cls]


# --- Conversion ---


def _scalar(value: Any) -> Any:
    return int(value) if isinstance(value, IntEnum) else value


def _set_timestamp(value: datetime, timestamp: Message) -> None:
    # Naive datetimes are taken to be UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    delta = value - _EPOCH
    timestamp.seconds = delta.days * 86400 + delta.seconds
    timestamp.nanos = delta.microseconds * 1000


def _set_composite(element: Any, value: Any, target: Message) -> None:
    if element is datetime:
        _set_timestamp(value, target)
    else:
        _to_wire(value, target)


def _to_wire(model: ProtoModel, message: Message) -> None:
    for field in _wire_fields(type(model)):
        if field.oneof is None:
            value = getattr(model, field.name)
        elif model.which(field.oneof) == field.name:
            value = getattr(model, field.oneof)
        else:
            continue

        if field.is_map:
            getattr(message, field.name).update(value)
        elif field.repeated:
            container = getattr(message, field.name)
            for item in value:
                if _is_composite(field.element):
                    _set_composite(field.element, item, container.add())
                else:
                    container.append(_scalar(item))
        elif _is_composite(field.element):
            if value is not None:
                target = getattr(message, field.name)
                target.SetInParent()
                _set_composite(field.element, value, target)
        else:
            setattr(message, field.name, _scalar(value))


def _read_composite(element: Any, source: Message) -> Any:
    if element is datetime:
        return _EPOCH + timedelta(seconds=source.seconds, microseconds=source.nanos // 1000)
    return _from_wire(element, source)


def _from_wire(cls: type[M], message: Message) -> M:
    data: dict[str, Any] = {}
    for field in _wire_fields(cls):
        if field.oneof is not None:
            if message.WhichOneof(field.oneof) == field.name:
                data[field.name] = _read_composite(field.element, getattr(message, field.name))
            continue

        value = getattr(message, field.name)
        if field.is_map:
            data[field.name] = dict(value)
        elif field.repeated:
            if _is_composite(field.element):
                data[field.name] = [_read_composite(field.element, item) for item in value]
            else:
                data[field.name] = list(value)
        elif _is_composite(field.element):
            if message.HasField(field.name):
                data[field.name] = _read_composite(field.element, value)
        else:
            data[field.name] = value
    return cls.model_validate(data)


# --- Any payloads ---


class AnyPayload(ProtoModel):
    """A google.protobuf.Any: an opaque payload tagged with its type URL."""

    type_url: str = tag(1, "")
    value: bytes = tag(2, b"")

    @classmethod
    def pack(cls, message: ProtoModel, type_url: str | None = None) -> "AnyPayload":
        url = type_url or f"type.waypost.dev/{type(message).__qualname__}"
        return cls(type_url=url, value=message.encode())


class PayloadRegistry:
    """Maps Any type URLs to the decoder able to read them."""

    def __init__(self) -> None:
        self._decoders: dict[str, Callable[[bytes], Any]] = {}

    def register(self, type_url: str, decoder: Callable[[bytes], Any] | type[ProtoModel]) -> None:
        if isinstance(decoder, type) and issubclass(decoder, ProtoModel):
            decoder = decoder.decode
        self._decoders[type_url] = decoder

    def unpack(self, payload: AnyPayload) -> Any:
        """Decode a payload with its registered decoder.

        Raises:
            KeyError: If no decoder is registered for the payload's type URL.
        """
        try:
            decoder = self._decoders[payload.type_url]
        except KeyError:
            raise KeyError(f"No decoder registered for {payload.type_url}") from None
        return decoder(payload.value)

    def __contains__(self, type_url: str) -> bool:
        return type_url in self._decoders


# Registry shared by plugin packages that publish payload types.
payloads = PayloadRegistry()
