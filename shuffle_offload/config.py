"""Configuration extraction for the shuffle transfer client.

Values are resolved once from a flat mapping of Spark-style keys (or a YAML
file) into an immutable :class:`ShuffleClientConfig`. Everything derived from
them, such as filesystem properties and credentials, is computed eagerly at
construction time.
"""
from __future__ import annotations

import json
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Type, TypeVar
from urllib.parse import urlparse

import yaml

from .common.layout import SUPPORTED_STORAGE_STRATEGIES, RemoteLayout, ShuffleStorageStrategy
from .errors import ConfigurationError

CONF_PREFIX = "spark.shuffle.hadoop.async."

BASE_URI = "base.uri"
HADOOP_BASE_URI = "hadoop.base.uri"
APP_NAME = "app.name"
UPLOAD_PARALLELISM = "upload.parallelism"
DOWNLOAD_PARALLELISM = "download.parallelism"
DRIVER_REF_CACHE_MAX_SIZE = "driver.ref.cache.size"
DRIVER_REF_CACHE_EXPIRATION_PERIOD = "driver.ref.cache.expiration.ms"
DOWNLOAD_SHUFFLE_BLOCK_BUFFER_SIZE = "download.shuffle.block.buffer.size"
DOWNLOAD_SHUFFLE_BLOCKS_IN_MEMORY_MAX_SIZE = "download.shuffle.blocks.in.memory.max.size"
LOCAL_FILE_STREAM_BUFFER_SIZE = "local.file.stream.buffer.size"
CACHE_INDEX_FILES_LOCALLY = "cache.index.files.locally"
PREFER_DOWNLOAD_FROM_HADOOP = "prefer.download.from.hadoop"
S3A_ENDPOINT = "s3a.endpoint"
S3A_CREDS_FILE = "s3a.creds.file"
S3A_UPLOAD_MULTIPART_TYPE = "s3a.upload.multipart.type"
S3A_UPLOAD_MULTIPART_SIZE = "s3a.upload.multipart.size"
UPLOAD_QUEUE_MAX_DEPTH = "upload.queue.max.depth"
UPLOAD_QUEUE_FULL_POLICY = "upload.queue.full.policy"
DOWNLOAD_QUEUE_MAX_DEPTH = "download.queue.max.depth"
DOWNLOAD_QUEUE_FULL_POLICY = "download.queue.full.policy"
ADMISSION_BLOCK_TIMEOUT = "admission.block.timeout.seconds"
TRANSFER_TIMEOUT = "transfer.timeout.seconds"
LOCAL_DIR = "local.dir"
LOCATION_REGISTRY = "location.registry"
STORAGE_STRATEGY = "storage.strategy"
REDIS_HOST = "redis.host"
REDIS_PORT = "redis.port"
REDIS_DB = "redis.db"
REDIS_EXPIRY_SECONDS = "redis.expiry.seconds"

DEFAULT_PARALLELISM = 5
DEFAULT_REF_CACHE_SIZE = 10000
DEFAULT_REF_CACHE_EXPIRATION_MS = 10 * 60 * 1000
DEFAULT_BUFFER_SIZE = 64 * 1024
DEFAULT_IN_MEMORY_MAX_SIZE = 8 * 1024 * 1024
DEFAULT_MULTIPART_TYPE = "disk"
DEFAULT_MULTIPART_SIZE = "64M"

SUPPORTED_MULTIPART_TYPES = {"disk", "array", "bytebuffer"}
SUPPORTED_LOCATION_REGISTRIES = {"transport", "redis"}

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kKmMgGtT]?)[bB]?\s*$")
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}

_E = TypeVar("_E", bound=Enum)


class QueueFullPolicy(str, Enum):
    BLOCK = "block"
    REJECT = "reject"


@dataclass(frozen=True)
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    expiry_seconds: Optional[int] = None


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str

    @classmethod
    def from_bytes(cls, payload: bytes) -> "AwsCredentials":
        try:
            data = json.loads(payload.decode("utf-8"))
            return cls(
                access_key_id=data["accessKeyId"],
                secret_access_key=data["secretAccessKey"],
                session_token=data["sessionToken"],
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
            raise ConfigurationError(f"malformed AWS credentials document: {exc}") from exc

    def __repr__(self) -> str:
        return f"AwsCredentials(access_key_id={self.access_key_id!r}, secret_access_key=***)"


def load_aws_credentials(path: Optional[str]) -> AwsCredentials:
    """Read the mandatory credentials file referenced by ``s3a.creds.file``."""

    if not path:
        raise ConfigurationError(
            f"Expected configuration {CONF_PREFIX}{S3A_CREDS_FILE} to be set for s3a base URIs"
        )
    try:
        payload = Path(path).read_bytes()
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Expected AWS credentials file at {path}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Unable to read AWS credentials file {path}: {exc}") from exc
    return AwsCredentials.from_bytes(payload)


def parse_size(value: Any) -> int:
    """Parse ``64M`` style sizes into bytes."""

    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ConfigurationError(f"invalid size value {value!r}")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.lower()]


@dataclass(frozen=True)
class ShuffleClientConfig:
    """Immutable, fully resolved client configuration."""

    base_uri: Optional[str] = None
    hadoop_base_uri: Optional[str] = None
    app_name: str = "spark-app"
    upload_parallelism: int = DEFAULT_PARALLELISM
    download_parallelism: int = DEFAULT_PARALLELISM
    driver_ref_cache_size: int = DEFAULT_REF_CACHE_SIZE
    driver_ref_cache_expiration_millis: int = DEFAULT_REF_CACHE_EXPIRATION_MS
    download_shuffle_block_buffer_size: int = DEFAULT_BUFFER_SIZE
    download_shuffle_block_in_memory_max_size: int = DEFAULT_IN_MEMORY_MAX_SIZE
    local_file_buffer_size: int = DEFAULT_BUFFER_SIZE
    cache_index_files_locally: bool = True
    prefer_download_from_hadoop: bool = False
    s3a_endpoint: Optional[str] = None
    s3a_creds_file: Optional[str] = None
    s3a_upload_multipart_type: str = DEFAULT_MULTIPART_TYPE
    s3a_upload_multipart_size: str = DEFAULT_MULTIPART_SIZE
    upload_queue_max_depth: Optional[int] = None
    upload_queue_full_policy: QueueFullPolicy = QueueFullPolicy.BLOCK
    download_queue_max_depth: Optional[int] = None
    download_queue_full_policy: QueueFullPolicy = QueueFullPolicy.BLOCK
    admission_block_timeout: Optional[float] = None
    transfer_timeout: Optional[float] = None
    local_dir: Optional[str] = None
    location_registry: str = "transport"
    storage_strategy: ShuffleStorageStrategy = ShuffleStorageStrategy.BASIC
    redis: RedisConfig = field(default_factory=RedisConfig)

    # Derived in __post_init__.
    multipart_size_bytes: int = field(init=False, compare=False)
    resolved_local_dir: Path = field(init=False, compare=False)
    aws_credentials: Optional[AwsCredentials] = field(init=False, repr=False, compare=False)
    hadoop_conf: Mapping[str, str] = field(init=False, repr=False, compare=False)
    layout: Optional[RemoteLayout] = field(init=False, compare=False)

    def __post_init__(self) -> None:
        self._validate()
        object.__setattr__(self, "multipart_size_bytes", parse_size(self.s3a_upload_multipart_size))
        object.__setattr__(
            self, "resolved_local_dir", Path(self.local_dir or tempfile.gettempdir())
        )
        credentials = None
        if self.base_scheme == "s3a":
            credentials = load_aws_credentials(self.s3a_creds_file)
        object.__setattr__(self, "aws_credentials", credentials)
        object.__setattr__(self, "hadoop_conf", MappingProxyType(self._build_hadoop_conf()))
        layout = (
            RemoteLayout(self.base_uri, self.app_name, self.storage_strategy) if self.base_uri else None
        )
        object.__setattr__(self, "layout", layout)

    def _validate(self) -> None:
        for name in (
            "upload_parallelism",
            "download_parallelism",
            "driver_ref_cache_size",
            "driver_ref_cache_expiration_millis",
            "download_shuffle_block_buffer_size",
            "local_file_buffer_size",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.download_shuffle_block_in_memory_max_size < 0:
            raise ConfigurationError("download_shuffle_block_in_memory_max_size must be >= 0")
        for name in ("upload_queue_max_depth", "download_queue_max_depth"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive when set, got {value}")
        for name in ("admission_block_timeout", "transfer_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive when set, got {value}")
        if self.s3a_upload_multipart_type not in SUPPORTED_MULTIPART_TYPES:
            raise ConfigurationError(
                f"unsupported multipart type {self.s3a_upload_multipart_type!r}; "
                f"expected one of {sorted(SUPPORTED_MULTIPART_TYPES)}"
            )
        if self.location_registry not in SUPPORTED_LOCATION_REGISTRIES:
            raise ConfigurationError(
                f"unsupported location registry {self.location_registry!r}; "
                f"expected one of {sorted(SUPPORTED_LOCATION_REGISTRIES)}"
            )
        try:
            strategy = ShuffleStorageStrategy(self.storage_strategy)
        except ValueError as exc:
            raise ConfigurationError(
                f"unknown storage strategy {self.storage_strategy!r}; "
                f"expected one of {[s.value for s in ShuffleStorageStrategy]}"
            ) from exc
        if strategy not in SUPPORTED_STORAGE_STRATEGIES:
            raise ConfigurationError(
                f"storage strategy {strategy.value!r} is not supported by this client; "
                f"supported: {sorted(s.value for s in SUPPORTED_STORAGE_STRATEGIES)}"
            )
        object.__setattr__(self, "storage_strategy", strategy)

    @property
    def base_scheme(self) -> Optional[str]:
        if not self.base_uri:
            return None
        return urlparse(self.base_uri).scheme or "file"

    @property
    def resolved_endpoint(self) -> Optional[str]:
        return self.hadoop_conf.get("fs.s3a.endpoint")

    def _build_hadoop_conf(self) -> Dict[str, str]:
        conf: Dict[str, str] = {}
        if self.aws_credentials is not None:
            conf["fs.s3a.access.key"] = self.aws_credentials.access_key_id
            conf["fs.s3a.secret.key"] = self.aws_credentials.secret_access_key
            conf["fs.s3a.session.token"] = self.aws_credentials.session_token
            conf["fs.s3a.aws.credentials.provider"] = (
                "org.apache.hadoop.fs.s3a.TemporaryAWSCredentialsProvider"
            )
            if self.s3a_endpoint:
                conf["fs.s3a.endpoint"] = self.s3a_endpoint
            conf["fs.s3a.experimental.input.fadvise"] = "random"
            conf["fs.s3a.fast.upload.buffer"] = self.s3a_upload_multipart_type
            conf["fs.s3a.multipart.size"] = str(self.multipart_size_bytes)
        for scheme in ("s3a", "s3", "hdfs", "file"):
            conf[f"fs.{scheme}.impl.disable.cache"] = "true"
        return conf

    @classmethod
    def from_conf(cls, conf: Mapping[str, Any]) -> "ShuffleClientConfig":
        """Build a config from Spark-style keys, with or without ``CONF_PREFIX``."""

        reader = _ConfReader(conf)
        return cls(
            base_uri=reader.get_str(BASE_URI),
            hadoop_base_uri=reader.get_str(HADOOP_BASE_URI),
            app_name=reader.get_str(APP_NAME) or "spark-app",
            upload_parallelism=reader.get_int(UPLOAD_PARALLELISM, DEFAULT_PARALLELISM),
            download_parallelism=reader.get_int(DOWNLOAD_PARALLELISM, DEFAULT_PARALLELISM),
            driver_ref_cache_size=reader.get_int(DRIVER_REF_CACHE_MAX_SIZE, DEFAULT_REF_CACHE_SIZE),
            driver_ref_cache_expiration_millis=reader.get_int(
                DRIVER_REF_CACHE_EXPIRATION_PERIOD, DEFAULT_REF_CACHE_EXPIRATION_MS
            ),
            download_shuffle_block_buffer_size=reader.get_size(
                DOWNLOAD_SHUFFLE_BLOCK_BUFFER_SIZE, DEFAULT_BUFFER_SIZE
            ),
            download_shuffle_block_in_memory_max_size=reader.get_size(
                DOWNLOAD_SHUFFLE_BLOCKS_IN_MEMORY_MAX_SIZE, DEFAULT_IN_MEMORY_MAX_SIZE
            ),
            local_file_buffer_size=reader.get_size(LOCAL_FILE_STREAM_BUFFER_SIZE, DEFAULT_BUFFER_SIZE),
            cache_index_files_locally=reader.get_bool(CACHE_INDEX_FILES_LOCALLY, True),
            prefer_download_from_hadoop=reader.get_bool(PREFER_DOWNLOAD_FROM_HADOOP, False),
            s3a_endpoint=reader.get_str(S3A_ENDPOINT),
            s3a_creds_file=reader.get_str(S3A_CREDS_FILE),
            s3a_upload_multipart_type=reader.get_str(S3A_UPLOAD_MULTIPART_TYPE)
            or DEFAULT_MULTIPART_TYPE,
            s3a_upload_multipart_size=reader.get_str(S3A_UPLOAD_MULTIPART_SIZE)
            or DEFAULT_MULTIPART_SIZE,
            upload_queue_max_depth=reader.get_optional_int(UPLOAD_QUEUE_MAX_DEPTH),
            upload_queue_full_policy=reader.get_policy(UPLOAD_QUEUE_FULL_POLICY),
            download_queue_max_depth=reader.get_optional_int(DOWNLOAD_QUEUE_MAX_DEPTH),
            download_queue_full_policy=reader.get_policy(DOWNLOAD_QUEUE_FULL_POLICY),
            admission_block_timeout=reader.get_optional_float(ADMISSION_BLOCK_TIMEOUT),
            transfer_timeout=reader.get_optional_float(TRANSFER_TIMEOUT),
            local_dir=reader.get_str(LOCAL_DIR),
            location_registry=reader.get_str(LOCATION_REGISTRY) or "transport",
            storage_strategy=reader.get_choice(
                STORAGE_STRATEGY, ShuffleStorageStrategy, ShuffleStorageStrategy.BASIC
            ),
            redis=RedisConfig(
                host=reader.get_str(REDIS_HOST) or "localhost",
                port=reader.get_int(REDIS_PORT, 6379),
                db=reader.get_int(REDIS_DB, 0),
                expiry_seconds=reader.get_optional_int(REDIS_EXPIRY_SECONDS),
            ),
        )


class _ConfReader:
    """Typed lookups over a flat configuration mapping."""

    def __init__(self, conf: Mapping[str, Any]) -> None:
        self._conf: Dict[str, Any] = {}
        for key, value in conf.items():
            key = str(key)
            if key.startswith(CONF_PREFIX):
                key = key[len(CONF_PREFIX):]
            self._conf[key] = value

    def _raw(self, key: str) -> Any:
        value = self._conf.get(key)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def get_str(self, key: str) -> Optional[str]:
        value = self._raw(key)
        return None if value is None else str(value)

    def get_int(self, key: str, default: int) -> int:
        value = self.get_optional_int(key)
        return default if value is None else value

    def get_optional_int(self, key: str) -> Optional[int]:
        value = self._raw(key)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{CONF_PREFIX}{key} must be an integer, got {value!r}") from exc

    def get_optional_float(self, key: str) -> Optional[float]:
        value = self._raw(key)
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{CONF_PREFIX}{key} must be a number, got {value!r}") from exc

    def get_size(self, key: str, default: int) -> int:
        value = self._raw(key)
        return default if value is None else parse_size(value)

    def get_bool(self, key: str, default: bool) -> bool:
        value = self._raw(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigurationError(f"{CONF_PREFIX}{key} must be a boolean, got {value!r}")

    def get_policy(self, key: str) -> QueueFullPolicy:
        return self.get_choice(key, QueueFullPolicy, QueueFullPolicy.BLOCK)

    def get_choice(self, key: str, choices: Type[_E], default: _E) -> _E:
        value = self.get_str(key)
        if value is None:
            return default
        try:
            return choices(value.strip().lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"{CONF_PREFIX}{key} must be one of {[c.value for c in choices]}, got {value!r}"
            ) from exc


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


DEFAULT_CONFIG = ShuffleClientConfig()


def load_config(path: str | Path | None) -> ShuffleClientConfig:
    """Load a YAML configuration file; ``None`` returns the defaults."""

    if path is None:
        return DEFAULT_CONFIG
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(path)
    with config_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    if isinstance(data.get("shuffle"), Mapping):
        data = data["shuffle"]
    return ShuffleClientConfig.from_conf(_flatten(data))


__all__ = [
    "CONF_PREFIX",
    "AwsCredentials",
    "QueueFullPolicy",
    "RedisConfig",
    "ShuffleClientConfig",
    "ShuffleStorageStrategy",
    "DEFAULT_CONFIG",
    "load_aws_credentials",
    "load_config",
    "parse_size",
]
