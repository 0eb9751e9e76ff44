from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from invokers import INVOKER_TYPES, HTTPInvoker, build_invoker
from runner import DEFAULT_PERCENTILES, RunConfig, TargetVariant

LOG = logging.getLogger("config")

DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
UNEXPANDED_VAR_RE = re.compile(r"\$\{[A-Za-z_][A-Za-z0-9_]*\}")
DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(ValueError):
    pass


def parse_duration(value: Union[str, int, float, None], label: str = "duration") -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {label}: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in DURATION_PART_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigError(
            f"Invalid {label}: {value!r}. Expected seconds or a duration like 500ms, 30s, 1m30s."
        )
    return total


@dataclass
class LoadSettings:
    concurrency: int = 1
    duration_s: float = 30.0
    warmup_s: float = 0.0
    request_timeout_s: float = 30.0
    concurrency_levels: list[int] = field(default_factory=list)
    show_progress: bool = False
    max_retries: int = 3
    latency_percentiles: list[int] = field(default_factory=lambda: list(DEFAULT_PERCENTILES))
    queue_depth_factor: int = 2


@dataclass
class ModelSettings:
    name: str
    type: str
    api_key: str = ""
    base_url: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    skip: bool = False
    concurrency_levels: list[int] = field(default_factory=list)
    stream: Optional[bool] = None
    proxy_name: str = ""


@dataclass
class PromptSettings:
    system_message: str = ""
    user_message: str = ""
    stream: bool = False


@dataclass
class ProxySettings:
    name: str
    url: str


@dataclass
class Settings:
    test: LoadSettings
    models: list[ModelSettings]
    prompt: PromptSettings
    proxies: list[ProxySettings] = field(default_factory=list)


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _int_list(value: Any, label: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a list of integers")
    try:
        return [int(item) for item in value]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a list of integers") from exc


def _int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be an integer, got {value!r}") from exc


def _bool(value: Any, label: str, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be true or false, got {value!r}")
    return value


def _expand(value: Any) -> str:
    return os.path.expandvars(str(value or ""))


def _parse_test(raw: dict[str, Any]) -> LoadSettings:
    settings = LoadSettings()
    if raw.get("concurrency"):
        settings.concurrency = _int(raw["concurrency"], "test.concurrency")
    if raw.get("duration"):
        settings.duration_s = parse_duration(raw["duration"], "test.duration")
    if raw.get("warmup_duration") is not None:
        settings.warmup_s = parse_duration(raw["warmup_duration"], "test.warmup_duration")
    if raw.get("request_timeout"):
        settings.request_timeout_s = parse_duration(raw["request_timeout"], "test.request_timeout")
    settings.concurrency_levels = _int_list(raw.get("concurrency_levels"), "test.concurrency_levels")
    settings.show_progress = _bool(raw.get("show_progress"), "test.show_progress")
    if raw.get("max_retries"):
        settings.max_retries = _int(raw["max_retries"], "test.max_retries")
    if raw.get("latency_percentiles") is not None:
        settings.latency_percentiles = _int_list(
            raw["latency_percentiles"], "test.latency_percentiles"
        )
    if raw.get("queue_depth_factor"):
        settings.queue_depth_factor = _int(raw["queue_depth_factor"], "test.queue_depth_factor")
    return settings


def _parse_model(index: int, raw: Any) -> ModelSettings:
    if not isinstance(raw, dict):
        raise ConfigError(f"model #{index} must be a mapping")
    params = raw.get("params") or {}
    if not isinstance(params, dict):
        raise ConfigError(f"model #{index} params must be a mapping")
    stream = raw.get("stream")
    if stream is not None:
        _bool(stream, f"model #{index} stream")
    return ModelSettings(
        name=str(raw.get("name") or ""),
        type=str(raw.get("type") or ""),
        api_key=_expand(raw.get("api_key")),
        base_url=_expand(raw.get("base_url")),
        params=dict(params),
        skip=_bool(raw.get("skip"), f"model #{index} skip"),
        concurrency_levels=_int_list(
            raw.get("concurrency_levels"), f"model #{index} concurrency_levels"
        ),
        stream=stream,
        proxy_name=str(raw.get("proxy_name") or ""),
    )


def parse_settings(raw: Any) -> Settings:
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be a mapping")
    models_raw = raw.get("models") or []
    if not isinstance(models_raw, list):
        raise ConfigError("'models' must be a list")
    proxies_raw = raw.get("proxies") or []
    if not isinstance(proxies_raw, list):
        raise ConfigError("'proxies' must be a list")
    prompt_raw = _section(raw, "prompt")

    settings = Settings(
        test=_parse_test(_section(raw, "test")),
        models=[_parse_model(index, item) for index, item in enumerate(models_raw, start=1)],
        prompt=PromptSettings(
            system_message=str(prompt_raw.get("system_message") or ""),
            user_message=str(prompt_raw.get("user_message") or ""),
            stream=_bool(prompt_raw.get("stream"), "prompt.stream"),
        ),
        proxies=[
            ProxySettings(name=str(item.get("name") or ""), url=_expand(item.get("url")))
            for item in proxies_raw
            if isinstance(item, dict)
        ],
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    test = settings.test
    if not settings.models:
        raise ConfigError("at least one model must be configured")
    if not settings.prompt.user_message:
        raise ConfigError("prompt.user_message must not be empty")
    if test.concurrency <= 0:
        raise ConfigError(f"test.concurrency must be > 0, got {test.concurrency}")
    if test.duration_s <= 0:
        raise ConfigError(f"test.duration must be > 0, got {test.duration_s}")
    if test.warmup_s < 0:
        raise ConfigError(f"test.warmup_duration must be >= 0, got {test.warmup_s}")
    if test.request_timeout_s <= 0:
        raise ConfigError(f"test.request_timeout must be > 0, got {test.request_timeout_s}")
    if test.queue_depth_factor <= 0:
        raise ConfigError(f"test.queue_depth_factor must be > 0, got {test.queue_depth_factor}")
    if any(level <= 0 for level in test.concurrency_levels):
        raise ConfigError(f"test.concurrency_levels must be > 0, got {test.concurrency_levels}")
    for pct in test.latency_percentiles:
        if pct < 0 or pct > 100:
            raise ConfigError(f"test.latency_percentiles must be within [0, 100], got {pct}")

    seen: set[str] = set()
    for index, model in enumerate(settings.models, start=1):
        if not model.name:
            raise ConfigError(f"model #{index} has no name")
        if not model.type:
            raise ConfigError(f"model {model.name} has no type")
        if model.type not in INVOKER_TYPES:
            raise ConfigError(
                f"model {model.name} has unsupported type {model.type!r}; "
                f"expected one of {sorted(INVOKER_TYPES)}"
            )
        if not model.api_key:
            raise ConfigError(f"model {model.name} has no api_key")
        for label, value in (("api_key", model.api_key), ("base_url", model.base_url)):
            unset = UNEXPANDED_VAR_RE.search(value)
            if unset:
                raise ConfigError(
                    f"model {model.name} {label} references unset environment variable {unset.group(0)}"
                )
        if model.name in seen:
            raise ConfigError(f"model name {model.name} is configured more than once")
        seen.add(model.name)
        if any(level <= 0 for level in model.concurrency_levels):
            raise ConfigError(
                f"model {model.name} concurrency_levels must be > 0, got {model.concurrency_levels}"
            )


def load_config(path: Union[str, Path]) -> Settings:
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"could not read config file {config_path}: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse config file {config_path}: {exc}") from exc
    return parse_settings(raw or {})


def apply_overrides(
    settings: Settings,
    concurrency: Optional[int] = None,
    duration_s: Optional[float] = None,
) -> Settings:
    test = settings.test
    if concurrency is not None and concurrency > 0:
        test = replace(test, concurrency=concurrency)
    if duration_s is not None and duration_s > 0:
        test = replace(test, duration_s=duration_s)
    return replace(settings, test=test)


def build_run_config(settings: Settings) -> RunConfig:
    test = settings.test
    if test.max_retries > 0:
        LOG.debug("max_retries=%s is accepted but not applied; each request is attempted once", test.max_retries)
    return RunConfig(
        duration_s=test.duration_s,
        warmup_s=test.warmup_s,
        request_timeout_s=test.request_timeout_s,
        queue_depth_factor=test.queue_depth_factor,
        latency_percentiles=tuple(test.latency_percentiles),
        show_progress=test.show_progress,
        concurrency=test.concurrency,
        concurrency_levels=tuple(test.concurrency_levels),
        stream=settings.prompt.stream,
        system_prompt=settings.prompt.system_message,
        user_prompt=settings.prompt.user_message,
        max_retries=test.max_retries,
    )


def _make_invoker(
    model: ModelSettings,
    proxy_url: Optional[str],
    timeout_s: float,
    concurrency: int,
) -> HTTPInvoker:
    return build_invoker(
        model.type,
        name=model.name,
        base_url=model.base_url,
        api_key=model.api_key,
        params=model.params,
        timeout_s=timeout_s,
        max_connections=max(concurrency * 2, 16),
        proxy_url=proxy_url,
    )


def build_variants(settings: Settings) -> list[TargetVariant]:
    proxies = {proxy.name: proxy.url for proxy in settings.proxies}
    variants: list[TargetVariant] = []
    for model in settings.models:
        if model.skip:
            LOG.info("Skipping model %s", model.name)
            continue
        proxy_url: Optional[str] = None
        if model.proxy_name:
            proxy_url = proxies.get(model.proxy_name)
            if proxy_url is None:
                LOG.warning(
                    "Proxy %s for model %s is not configured, connecting directly",
                    model.proxy_name,
                    model.name,
                )
        variants.append(
            TargetVariant(
                name=model.name,
                invoker_factory=functools.partial(
                    _make_invoker, model, proxy_url, settings.test.request_timeout_s
                ),
                concurrency_levels=tuple(model.concurrency_levels),
                stream=model.stream,
            )
        )
    return variants
