"""Configuration loading.

Sources, highest precedence first:

1. an explicit file passed with ``-f=<path>``
2. the process environment when ``--env`` is given
3. ``<cwd>/config/<role>.properties``
4. the ``<role>.properties`` resource packaged in :mod:`pqdemo.resources`

Files ending in ``.yaml``/``.yml`` are read with PyYAML and flattened to
dotted keys; anything else is parsed as a Java-style properties file.
Malformed individual values never abort loading: the default is used and a
warning is recorded on the resulting :class:`DemoConfig`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from importlib import resources
from pathlib import Path

import yaml

from pqdemo.errors import ConfigInvalid
from pqdemo.models.config import (
    DEFAULT_CONNECT_RETRIES_PER_HOST,
    DEFAULT_MSG_VPN,
    DEFAULT_NUMBER_OF_KEYS,
    DEFAULT_PUBLISH_RATE,
    DEFAULT_QUEUE_NAME,
    DEFAULT_RECONNECT_RETRIES,
    DEFAULT_TOPIC_PREFIX,
    DEFAULT_TRANSACTED_MSG_COUNT,
    DEFAULT_WINDOW_SIZE,
    MAX_RATE,
    MAX_TX_COUNT,
    MAX_WINDOW,
    MIN_RATE,
    MIN_TX_COUNT,
    MIN_WINDOW,
    DemoConfig,
    Role,
)
from pqdemo.models.message import AckMode, KeyPolicy

logger = logging.getLogger(__name__)

PACKAGE_RESOURCES = "pqdemo.resources"

HOST_KEY = "solace.messaging.transport.host"
VPN_KEY = "solace.messaging.service.vpn-name"
RECONNECT_KEY = "solace.messaging.transport.reconnection-attempts"
RETRIES_PER_HOST_KEY = "solace.messaging.transport.connection.retries-per-host"
WINDOW_KEY = "sub_ack_window_size"

RATE_KEYS = {
    Role.PUBLISHER: "publish.msg.rate",
    Role.CONSUMER: "consume.msg.rate",
}

# Keys interpreted by the drivers; everything else goes to the transport as-is.
DRIVER_KEYS = frozenset(
    {
        "queue.name",
        "publish.msg.rate",
        "consume.msg.rate",
        "transacted.msg.count",
        "use.random.key",
        "number.of.unique.keys",
        "topic.prefix",
        "ack.mode",
        "transport",
    }
)

# (environment variable, property key, default when unset)
ENV_PROPERTIES: tuple[tuple[str, str, str | None], ...] = (
    ("SOLACE_HOST", HOST_KEY, "localhost"),
    ("SOLACE_MSGVPN_NAME", VPN_KEY, DEFAULT_MSG_VPN),
    ("SOLACE_MSG_USER", "solace.messaging.authentication.basic.username", "client1"),
    ("SOLACE_MSG_PASSWORD", "solace.messaging.authentication.basic.password", "client1pass"),
    ("RECONNECTION_ATTEMPTS", RECONNECT_KEY, str(DEFAULT_RECONNECT_RETRIES)),
    ("RETRIES_PER_HOST", RETRIES_PER_HOST_KEY, str(DEFAULT_CONNECT_RETRIES_PER_HOST)),
    ("TOPIC_PREFIX", "topic.prefix", DEFAULT_TOPIC_PREFIX),
    ("USE_RANDOM_KEY", "use.random.key", "false"),
    ("NUMBER_OF_UNIQUE_KEYS", "number.of.unique.keys", str(DEFAULT_NUMBER_OF_KEYS)),
)

CONSUMER_ENV_PROPERTIES: tuple[tuple[str, str, str | None], ...] = (
    ("QUEUE_NAME", "queue.name", DEFAULT_QUEUE_NAME),
    ("CONSUME_MSG_RATE", "consume.msg.rate", None),
    ("TRANSACTED_MSG_COUNT", "transacted.msg.count", None),
    ("SUB_ACK_WINDOW_SIZE", WINDOW_KEY, None),
)


def parse_properties(text: str) -> dict[str, str]:
    """Parse Java-style ``.properties`` text into a dict."""
    props: dict[str, str] = {}
    logical = ""
    for raw in text.splitlines():
        line = raw.lstrip()
        if not logical and (not line or line[0] in "#!"):
            continue
        if _continues(line):
            logical += line[:-1]
            continue
        logical += line
        key, value = _split_entry(logical)
        props[key] = value
        logical = ""
    if logical:
        key, value = _split_entry(logical)
        props[key] = value
    return props


def _continues(line: str) -> bool:
    trailing = len(line) - len(line.rstrip("\\"))
    return trailing % 2 == 1


def _split_entry(line: str) -> tuple[str, str]:
    i, n = 0, len(line)
    while i < n:
        c = line[i]
        if c == "\\":
            i += 2
            continue
        if c in "=:" or c.isspace():
            break
        i += 1
    key_end = min(i, n)
    j = key_end
    while j < n and line[j].isspace():
        j += 1
    if j < n and line[j] in "=:":
        j += 1
    while j < n and line[j].isspace():
        j += 1
    return _unescape(line[:key_end]), _unescape(line[j:])


_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape(text: str) -> str:
    if "\\" not in text:
        return text
    out: list[str] = []
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        if c != "\\" or i + 1 >= n:
            out.append(c)
            i += 1
            continue
        nxt = text[i + 1]
        if nxt == "u" and i + 6 <= n:
            try:
                out.append(chr(int(text[i + 2 : i + 6], 16)))
                i += 6
                continue
            except ValueError:
                pass
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(out)


def _flatten(data: Mapping, prefix: str = "") -> dict[str, str]:
    flat: dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        elif value is None:
            flat[name] = ""
        else:
            flat[name] = str(value)
    return flat


def read_config_file(path: Path) -> dict[str, str]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"{path}: expected a mapping at the top level")
        return _flatten(data)
    return parse_properties(text)


def read_packaged_properties(name: str) -> dict[str, str] | None:
    resource = resources.files(PACKAGE_RESOURCES).joinpath(name)
    if not resource.is_file():
        return None
    return parse_properties(resource.read_text(encoding="utf-8"))


def properties_from_env(role: Role, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    table = ENV_PROPERTIES
    if role is Role.CONSUMER:
        table = table + CONSUMER_ENV_PROPERTIES

    props: dict[str, str] = {}
    for env_name, key, default in table:
        value = environ.get(env_name, default)
        if value is not None:
            props[key] = value
    props["vpn_name"] = props[VPN_KEY]
    return props


def load_properties(
    role: Role,
    *,
    config_file: str | os.PathLike | None = None,
    from_env: bool = False,
    cwd: str | os.PathLike | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[dict[str, str], str]:
    """Resolve the raw key/value bag and a description of where it came from."""
    if config_file is None and from_env:
        logger.info("Reading %s configuration from the environment", role.value)
        return properties_from_env(role, environ), "<environment>"

    if config_file is not None:
        path = Path(config_file)
    else:
        path = Path(cwd if cwd is not None else Path.cwd()) / "config" / role.properties_file

    logger.info("Attempting to read properties from: %s", path)
    try:
        return read_config_file(path), str(path)
    except FileNotFoundError as e:
        logger.warning("File not found reading properties file: %s", e)
        logger.warning("Attempting to read packaged resource %s", role.properties_file)
    except OSError as e:
        raise ConfigInvalid(f"I/O error reading {path}: {e}", ConfigInvalid.IO_ERROR) from e
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigInvalid(f"Error reading {path}: {e}", ConfigInvalid.OTHER) from e

    props = read_packaged_properties(role.properties_file)
    if props is None:
        raise ConfigInvalid(
            f"No configuration at {path} and no packaged resource {role.properties_file}",
            ConfigInvalid.FILE_MISSING,
        )
    return props, f"{PACKAGE_RESOURCES}/{role.properties_file}"


class _Resolver:
    def __init__(self, props: Mapping[str, str]):
        self.props = props
        self.warnings: list[str] = []

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def integer(
        self,
        key: str,
        default: int,
        lo: int,
        hi: int | None = None,
        raw: str | None = None,
    ) -> int:
        if raw is None:
            raw = self.props.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw.strip(), 10)
        except ValueError:
            self.warn(f"Could not parse [{key}]={raw!r} as an integer, using default={default}")
            return default
        if value < lo or (hi is not None and value > hi):
            bounds = f"[{lo}, {hi}]" if hi is not None else f">= {lo}"
            self.warn(f"[{key}]={value} is outside {bounds}, using default={default}")
            return default
        return value


def build_config(
    role: Role,
    props: Mapping[str, str],
    *,
    rate_arg: str | None = None,
    default_rate: int = DEFAULT_PUBLISH_RATE,
    transport: str | None = None,
    source: str = "<memory>",
) -> DemoConfig:
    """Interpret a raw property bag as a :class:`DemoConfig`."""
    r = _Resolver(props)

    rate_key = RATE_KEYS[role]
    if rate_arg is not None:
        rate = r.integer(rate_key, default_rate, MIN_RATE, MAX_RATE, raw=rate_arg)
    else:
        rate = r.integer(rate_key, default_rate, MIN_RATE, MAX_RATE)

    use_random_key = props.get("use.random.key", "false").strip().lower() == "true"
    key_policy = KeyPolicy.RANDOM_UUID if use_random_key else KeyPolicy.ROTATING_ORDER

    ack_value = props.get("ack.mode", AckMode.AUTO.value).strip().lower()
    try:
        ack_mode = AckMode(ack_value)
    except ValueError:
        r.warn(f"Unknown [ack.mode]={ack_value!r}, using default={AckMode.AUTO.value}")
        ack_mode = AckMode.AUTO

    prefix = props.get("topic.prefix", DEFAULT_TOPIC_PREFIX).strip().rstrip("/")

    return DemoConfig(
        role=role,
        rate=rate,
        queue_name=props.get("queue.name", "").strip() or DEFAULT_QUEUE_NAME,
        vpn_name=(props.get("vpn_name") or props.get(VPN_KEY) or DEFAULT_MSG_VPN).strip(),
        key_policy=key_policy,
        unique_keys=r.integer("number.of.unique.keys", DEFAULT_NUMBER_OF_KEYS, 1),
        tx_batch_size=r.integer(
            "transacted.msg.count", DEFAULT_TRANSACTED_MSG_COUNT, MIN_TX_COUNT, MAX_TX_COUNT
        ),
        window_size=r.integer(WINDOW_KEY, DEFAULT_WINDOW_SIZE, MIN_WINDOW, MAX_WINDOW),
        ack_mode=ack_mode,
        topic_prefix=prefix or DEFAULT_TOPIC_PREFIX,
        reconnect_retries=r.integer(RECONNECT_KEY, DEFAULT_RECONNECT_RETRIES, -1),
        connect_retries_per_host=r.integer(
            RETRIES_PER_HOST_KEY, DEFAULT_CONNECT_RETRIES_PER_HOST, 0
        ),
        transport=(transport or props.get("transport", "solace")).strip().lower(),
        transport_properties={k: v for k, v in props.items() if k not in DRIVER_KEYS},
        source=source,
        warnings=tuple(r.warnings),
    )


def load_config(
    role: Role,
    *,
    config_file: str | os.PathLike | None = None,
    from_env: bool = False,
    rate_arg: str | None = None,
    default_rate: int = DEFAULT_PUBLISH_RATE,
    transport: str | None = None,
    cwd: str | os.PathLike | None = None,
    environ: Mapping[str, str] | None = None,
) -> DemoConfig:
    props, source = load_properties(
        role, config_file=config_file, from_env=from_env, cwd=cwd, environ=environ
    )
    return build_config(
        role,
        props,
        rate_arg=rate_arg,
        default_rate=default_rate,
        transport=transport,
        source=source,
    )
