"""Message types for the ``ppl.llm.proto.LLMService`` streaming contract.

The classes are built from a ``FileDescriptorProto`` at import time so the
client does not need a protoc-generated module on the path.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from records import GenerationRequest, ResponseFragment


PACKAGE = "ppl.llm.proto"
SERVICE_NAME = f"{PACKAGE}.LLMService"
GENERATION_METHOD = f"/{SERVICE_NAME}/Generation"
RESPONSE_FLAG_LAST = 1

_FieldProto = descriptor_pb2.FieldDescriptorProto


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    *,
    label: int = _FieldProto.LABEL_OPTIONAL,
    type_name: str | None = None,
) -> None:
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    if type_name is not None:
        field.type_name = type_name


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="llm.proto", package=PACKAGE, syntax="proto3"
    )

    request = file_proto.message_type.add(name="Request")
    _add_field(request, "id", 1, _FieldProto.TYPE_UINT64)
    _add_field(request, "prompt", 2, _FieldProto.TYPE_STRING)
    _add_field(request, "temperature", 3, _FieldProto.TYPE_FLOAT)
    _add_field(request, "generation_length", 4, _FieldProto.TYPE_INT32)

    batched = file_proto.message_type.add(name="BatchedRequest")
    _add_field(
        batched,
        "req",
        1,
        _FieldProto.TYPE_MESSAGE,
        label=_FieldProto.LABEL_REPEATED,
        type_name=f".{PACKAGE}.Request",
    )

    response = file_proto.message_type.add(name="Response")
    _add_field(response, "id", 1, _FieldProto.TYPE_UINT64)
    _add_field(response, "generated", 2, _FieldProto.TYPE_STRING)
    _add_field(response, "flag", 3, _FieldProto.TYPE_INT32)

    service = file_proto.service.add(name="LLMService")
    service.method.add(
        name="Generation",
        input_type=f".{PACKAGE}.BatchedRequest",
        output_type=f".{PACKAGE}.Response",
        server_streaming=True,
    )
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())

Request = message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.Request"))
BatchedRequest = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{PACKAGE}.BatchedRequest")
)
Response = message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.Response"))


def encode_request(request: GenerationRequest):
    """Wrap a single request into the batch-of-one message the service expects."""
    batched = BatchedRequest()
    item = batched.req.add()
    item.id = request.request_id
    item.prompt = request.prompt
    item.temperature = request.temperature
    item.generation_length = request.generation_length
    return batched


def decode_response(message) -> ResponseFragment:
    return ResponseFragment(
        request_id=int(message.id),
        generated=str(message.generated),
        is_last=int(message.flag) == RESPONSE_FLAG_LAST,
    )
