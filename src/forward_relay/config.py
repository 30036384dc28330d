"""Loading of the routing file and environment credentials."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Sequence

from .errors import ConfigError
from .models import Credentials, RoutingConfig

DEFAULT_CONFIG_PATH = Path("config.json")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_REQUIRED_KEYS = ("sources", "targets", "verbose")


def load_routing_config(path: Path) -> RoutingConfig:
    """Read ``sources``, ``targets`` and ``verbose`` from a JSON file."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Файл конфигурации {path} не найден") from exc
    except OSError as exc:
        raise ConfigError(f"Не удалось прочитать {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Некорректный JSON в {path}: {exc}") from exc
    return parse_routing_config(payload)


def parse_routing_config(payload: Any) -> RoutingConfig:
    if not isinstance(payload, Mapping):
        raise ConfigError("Конфигурация должна быть JSON-объектом")
    missing = [key for key in _REQUIRED_KEYS if key not in payload]
    if missing:
        raise ConfigError("В конфигурации нет полей: " + ", ".join(missing))

    verbose = payload["verbose"]
    if not isinstance(verbose, bool):
        raise ConfigError("Поле verbose должно быть true или false")

    return RoutingConfig(
        sources=frozenset(_parse_ids("sources", payload["sources"])),
        targets=tuple(_parse_ids("targets", payload["targets"])),
        verbose=verbose,
    )


def _parse_ids(name: str, value: Any) -> list[int]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ConfigError(f"Поле {name} должно быть списком идентификаторов")
    result: list[int] = []
    for item in value:
        # bool is an int subclass but never a valid chat id
        if isinstance(item, bool) or not isinstance(item, int):
            raise ConfigError(f"Поле {name}: {item!r} не является целым числом")
        if not _INT64_MIN <= item <= _INT64_MAX:
            raise ConfigError(f"Поле {name}: {item} не помещается в 64 бита")
        result.append(item)
    return result


def load_credentials(environ: Mapping[str, str] | None = None) -> Credentials:
    """Read ``TG_ID``, ``TG_HASH`` and ``PHONE`` from the environment."""

    env = os.environ if environ is None else environ
    raw_id = (env.get("TG_ID") or "").strip()
    if not raw_id:
        raise ConfigError("Не задана переменная окружения TG_ID")
    try:
        api_id = int(raw_id)
    except ValueError as exc:
        raise ConfigError("TG_ID должен быть целым числом") from exc

    api_hash = (env.get("TG_HASH") or "").strip()
    if not api_hash:
        raise ConfigError("Не задана переменная окружения TG_HASH")
    phone = (env.get("PHONE") or "").strip()
    if not phone:
        raise ConfigError("Не задана переменная окружения PHONE")
    return Credentials(api_id=api_id, api_hash=api_hash, phone=phone)
