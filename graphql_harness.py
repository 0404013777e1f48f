import base64
import copy
import json
import logging
import mimetypes
import os
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Tuple,
    Union,
)

import httpx
from pydantic import BaseModel, Field, ValidationError
from pymongo import AsyncMongoClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024
ENCODED_CHUNK_LENGTH = 4 * 1024
JSON_CONTENT_TYPE = "application/json"

JSONValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]
Variables = Mapping[str, JSONValue]
Buffer = Union[bytes, bytearray, memoryview]
PathLike = Union[str, "os.PathLike[str]"]
RequestHook = Callable[[httpx.Request], None]
UploadTuple = Tuple[str, bytes, str]


class HarnessError(Exception):
    pass


class ConfigError(HarnessError):
    pass


class SerializationError(HarnessError, ValueError):
    pass


class TransportError(HarnessError):
    def __init__(self, message: str, endpoint: str):
        super().__init__(message)
        self.endpoint = endpoint


class DecodeError(HarnessError, ValueError):
    def __init__(self, message: str, status_code: int, raw_body: str):
        super().__init__(message)
        self.status_code = status_code
        self.raw_body = raw_body


class AssertionFailure(HarnessError, AssertionError):
    def __init__(self, message: str, expected: Any = None, actual: Any = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class HarnessConfig(BaseModel):
    """Where the API under test lives and how to reach its document store.

    Build it once (usually with ``from_env``) and hand it to ``Transport`` or
    ``GraphQLClient``; nothing else in this module reads the environment.
    """

    host: str = "localhost"
    port: int = Field(default=8080, ge=1, le=65535)
    path: str = "/graphql"
    timeout: Optional[float] = Field(default=None, gt=0)
    db_uri: Optional[str] = None
    db_database: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessConfig":
        if environ is None:
            environ = os.environ
        values: Dict[str, Any] = {}
        for key, name in _ENV_KEYS.items():
            if environ.get(name):
                values[key] = environ[name]
        try:
            return cls(**values)
        except ValidationError as error:
            raise ConfigError(f"Invalid harness configuration: {error}") from error


_ENV_KEYS = {
    "host": "HOST",
    "port": "PORT",
    "timeout": "GRAPHQL_HARNESS_TIMEOUT",
    "db_uri": "RINGORO_DB_URI",
    "db_database": "RINGORO_DB_DATABASE",
}


# Binary codec


def encode(buffer: Buffer, chunk_size: int = CHUNK_SIZE) -> str:
    # Only chunk_size bytes are turned into characters at a time.
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size}")
    view = memoryview(buffer).cast("B")
    pieces = [
        bytes(view[offset : offset + chunk_size]).decode("latin-1")
        for offset in range(0, len(view), chunk_size)
    ]
    text = "".join(pieces)
    return base64.b64encode(text.encode("latin-1")).decode("ascii")


def iter_encoded(
    buffer: Buffer, max_length: int = ENCODED_CHUNK_LENGTH
) -> Iterator[str]:
    max_length -= max_length % 4
    if max_length < 4:
        raise ValueError("max_length must be at least 4")
    # 3 input bytes map to exactly 4 output characters, so slices that are a
    # multiple of 3 bytes never produce padding in the middle of the text.
    step = max_length // 4 * 3
    view = memoryview(buffer).cast("B")
    for offset in range(0, len(view), step):
        yield base64.b64encode(view[offset : offset + step]).decode("ascii")


# Fixtures


class Fixture(NamedTuple):
    path: str
    content: bytes
    mime_type: str
    last_modified: float

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def as_upload(self) -> UploadTuple:
        return (self.name, self.content, self.mime_type)

    def encoded(self) -> str:
        return encode(self.content)


def load(path: PathLike) -> Fixture:
    path = os.fspath(path)
    last_modified = os.stat(path).st_mtime
    content = read_bytes(path)
    mime_type, _ = mimetypes.guess_type(path)
    return Fixture(
        path=path,
        content=content,
        mime_type=mime_type or "",
        last_modified=last_modified,
    )


def read_bytes(path: PathLike) -> bytes:
    with open(path, "rb") as f:
        return f.read()


# Serialization


def serialize(query_text: str, variables: Optional[Variables] = None) -> str:
    variables = dict(variables or {})
    for name in variables:
        if not isinstance(name, str):
            raise SerializationError(f"Variable names must be strings, got {name!r}")
    envelope = {"query": query_text, "variables": variables}
    try:
        return json.dumps(envelope, allow_nan=False)
    except (TypeError, ValueError) as error:
        raise SerializationError(
            f"Variables are not JSON-encodable: {error}"
        ) from error


def serialize_multipart(
    query_text: str,
    variables: Optional[Variables],
    uploads: Mapping[str, Fixture],
) -> Tuple[Dict[str, str], Dict[str, UploadTuple]]:
    # uploads maps a dotted variable path ("file", "files.0") to a fixture.
    operation_variables = copy.deepcopy(dict(variables or {}))
    name_path_map: Dict[str, List[str]] = {}
    files: Dict[str, UploadTuple] = {}
    for index, (variable_path, fixture) in enumerate(uploads.items()):
        _set_placeholder(
            operation_variables, tuple(variable_path.split(".")), variable_path
        )
        name = str(index)
        name_path_map[name] = [f"variables.{variable_path}"]
        files[name] = fixture.as_upload()
    fields = {
        "operations": serialize(query_text, operation_variables),
        "map": json.dumps(name_path_map),
    }
    return fields, files


def _set_placeholder(ops_tree, path, full_path):
    key = path[0]
    if isinstance(ops_tree, list):
        try:
            key = int(key)
        except ValueError:
            raise SerializationError(
                f"'{full_path}': '{key}' is not a list index"
            ) from None
    if len(path) == 1:
        if not isinstance(ops_tree, (dict, list)):
            raise SerializationError(f"'{full_path}' does not name a variable slot")
        if isinstance(ops_tree, list) and not 0 <= key < len(ops_tree):
            raise SerializationError(f"'{full_path}': index {key} out of range")
        ops_tree[key] = None
        return
    try:
        subtree = ops_tree[key]
    except (KeyError, IndexError, TypeError):
        raise SerializationError(f"'{full_path}' does not resolve") from None
    _set_placeholder(subtree, path[1:], full_path)


# Transport


class ResponseEnvelope(NamedTuple):
    status_code: int
    raw_body: str


class Transport:
    def __init__(
        self,
        endpoint: str,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ):
        self.endpoint = endpoint
        self._owns_client = client is None
        self.client = client if client is not None else httpx.Client(timeout=timeout)

    @classmethod
    def from_config(
        cls, config: HarnessConfig, client: Optional[httpx.Client] = None
    ) -> "Transport":
        return cls(config.endpoint, client=client, timeout=config.timeout)

    def send(self, body: str, customize: Optional[RequestHook] = None) -> ResponseEnvelope:
        request = self.client.build_request(
            "POST",
            self.endpoint,
            content=body.encode("utf-8"),
            headers={"Content-Type": JSON_CONTENT_TYPE},
        )
        return self._send(request, customize)

    def send_multipart(
        self,
        fields: Mapping[str, str],
        files: Mapping[str, UploadTuple],
        customize: Optional[RequestHook] = None,
    ) -> ResponseEnvelope:
        request = self.client.build_request(
            "POST", self.endpoint, data=dict(fields), files=dict(files)
        )
        return self._send(request, customize)

    def _send(
        self, request: httpx.Request, customize: Optional[RequestHook]
    ) -> ResponseEnvelope:
        if customize is not None:
            customize(request)
        try:
            response = self.client.send(request)
        except httpx.TransportError as error:
            raise TransportError(
                f"POST {self.endpoint} failed: {error!r}", self.endpoint
            ) from error
        logger.debug("POST %s -> %d", self.endpoint, response.status_code)
        return ResponseEnvelope(response.status_code, response.text)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# Interpretation and assertions


class ParsedResult(NamedTuple):
    top_level_keys: frozenset
    data: Any
    body: Any

    @property
    def has_data(self) -> bool:
        return "data" in self.top_level_keys

    @property
    def errors(self) -> List[Any]:
        if isinstance(self.body, dict):
            return self.body.get("errors") or []
        return []


def interpret(envelope: ResponseEnvelope) -> ParsedResult:
    try:
        body = json.loads(envelope.raw_body)
    except ValueError as error:
        raise DecodeError(
            f"Response body (status {envelope.status_code}) is not valid JSON: "
            f"{envelope.raw_body!r}",
            envelope.status_code,
            envelope.raw_body,
        ) from error
    keys = frozenset(body) if isinstance(body, dict) else frozenset()
    data = body.get("data") if "data" in keys else None
    if "data" not in keys:
        logger.warning("Response has no 'data' field: %s", sorted(keys))
    return ParsedResult(keys, data, body)


def assert_ok(envelope: ResponseEnvelope, parsed: ParsedResult) -> None:
    if envelope.status_code != 200:
        raise AssertionFailure(
            f"Expected status 200, got {envelope.status_code}; "
            f"body: {envelope.raw_body}",
            expected=200,
            actual=envelope.status_code,
        )
    if not parsed.has_data:
        raise AssertionFailure(
            f"Expected 'data' in response keys {sorted(parsed.top_level_keys)}; "
            f"body: {envelope.raw_body}",
            expected="data",
            actual=parsed.top_level_keys,
        )


def assert_equal(expected: Any, actual: Any) -> None:
    if expected != actual:
        raise AssertionFailure(
            f"Expected {expected!r}, got {actual!r}", expected=expected, actual=actual
        )


def assert_includes(collection: Any, item: Any) -> None:
    try:
        found = item in collection
    except TypeError:
        found = False
    if not found:
        raise AssertionFailure(
            f"Expected {collection!r} to include {item!r}",
            expected=item,
            actual=collection,
        )


# Client


class QueryResult(NamedTuple):
    envelope: ResponseEnvelope
    parsed: ParsedResult

    @property
    def status_code(self) -> int:
        return self.envelope.status_code

    @property
    def data(self) -> Any:
        return self.parsed.data

    @property
    def errors(self) -> List[Any]:
        return self.parsed.errors

    def assert_ok(self) -> None:
        assert_ok(self.envelope, self.parsed)


class GraphQLClient:
    def __init__(
        self, transport: Transport, before_request: Optional[RequestHook] = None
    ):
        self.transport = transport
        self.before_request = before_request
        self.last_result: Optional[QueryResult] = None

    @classmethod
    def from_config(
        cls,
        config: HarnessConfig,
        client: Optional[httpx.Client] = None,
        before_request: Optional[RequestHook] = None,
    ) -> "GraphQLClient":
        return cls(Transport.from_config(config, client), before_request)

    def query(
        self,
        query_text: str,
        variables: Optional[Variables] = None,
        /,
        **kwargs: Any,
    ) -> QueryResult:
        variables = {**(variables or {}), **kwargs}
        envelope = self.transport.send(
            serialize(query_text, variables), self.before_request
        )
        return self._remember(envelope)

    mutate = query

    def upload(
        self,
        query_text: str,
        variables: Optional[Variables],
        uploads: Mapping[str, Fixture],
    ) -> QueryResult:
        fields, files = serialize_multipart(query_text, variables, uploads)
        envelope = self.transport.send_multipart(fields, files, self.before_request)
        return self._remember(envelope)

    def _remember(self, envelope: ResponseEnvelope) -> QueryResult:
        self.last_result = QueryResult(envelope, interpret(envelope))
        return self.last_result

    @property
    def data(self) -> Any:
        return self._require_result().data

    def assert_ok(self) -> None:
        self._require_result().assert_ok()

    def _require_result(self) -> QueryResult:
        if self.last_result is None:
            raise HarnessError("No request has been sent yet")
        return self.last_result

    def close(self) -> None:
        self.transport.close()

    def __enter__(self) -> "GraphQLClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# Document store


async def reset_db(
    config: HarnessConfig, client_factory: Optional[Callable[[str], Any]] = None
) -> None:
    if not config.db_uri or not config.db_database:
        raise ConfigError("reset_db needs both db_uri and db_database")
    factory = client_factory or AsyncMongoClient
    client = None
    try:
        client = factory(config.db_uri)
        await client.drop_database(config.db_database)
        logger.debug("Dropped database %s", config.db_database)
    finally:
        if client is not None:
            await client.close()
