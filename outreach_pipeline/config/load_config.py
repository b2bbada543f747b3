from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


UNIT_KINDS = ("discovery", "enrichment", "artifact")


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _require_min(value: int, *, key: str, min_v: int) -> int:
    if value < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {value}")
    return value


@dataclass(frozen=True)
class PipelineConfig:
    """Execution knobs injected into the pool and retry controller."""

    concurrency_ceiling: int = 3
    max_attempts: int = 5
    backoff_base_seconds: int = 2

    def __post_init__(self) -> None:
        _require_min(int(self.concurrency_ceiling), key="concurrency_ceiling", min_v=1)
        _require_min(int(self.max_attempts), key="max_attempts", min_v=1)
        _require_min(int(self.backoff_base_seconds), key="backoff_base_seconds", min_v=0)

    def backoff_delay_s(self, attempt: int) -> float:
        return float(self.backoff_base_seconds ** int(attempt))

    def to_dict(self) -> dict[str, int]:
        return {
            "concurrency_ceiling": int(self.concurrency_ceiling),
            "max_attempts": int(self.max_attempts),
            "backoff_base_seconds": int(self.backoff_base_seconds),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, key: str = "pipeline", base: PipelineConfig | None = None) -> PipelineConfig:
        base = base or cls()
        try:
            return cls(
                concurrency_ceiling=_as_int(
                    raw.get("concurrency_ceiling", base.concurrency_ceiling), key=f"{key}.concurrency_ceiling"
                ),
                max_attempts=_as_int(raw.get("max_attempts", base.max_attempts), key=f"{key}.max_attempts"),
                backoff_base_seconds=_as_int(
                    raw.get("backoff_base_seconds", base.backoff_base_seconds), key=f"{key}.backoff_base_seconds"
                ),
            )
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Invalid {key}: {e}") from e


@dataclass(frozen=True)
class LimitsConfig:
    max_units_per_batch: int
    units_list_default_limit: int
    units_list_max_limit: int


@dataclass(frozen=True)
class RecoveryConfig:
    stale_after_s: float
    reconcile_on_startup: bool


@dataclass(frozen=True)
class AgentsConfig:
    temperature: float
    discovery_prompt_template: str
    enrichment_prompt_template: str
    artifact_prompt_template: str
    image_model: str
    image_size: str


@dataclass(frozen=True)
class ServerConfig:
    """uvicorn launch settings; `OUTREACH_HOST`/`PORT`/`LOG_LEVEL`/`RELOAD` override them."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    reload: bool = False

    def with_env_overrides(self, environ: dict[str, str] | None = None) -> ServerConfig:
        env = os.environ if environ is None else environ
        reload = self.reload
        if env.get("OUTREACH_RELOAD"):
            reload = env["OUTREACH_RELOAD"].strip().lower() in {"1", "true", "yes", "y", "on"}
        return ServerConfig(
            host=env.get("OUTREACH_HOST") or self.host,
            port=_as_int(env.get("OUTREACH_PORT") or self.port, key="OUTREACH_PORT"),
            log_level=(env.get("OUTREACH_LOG_LEVEL") or self.log_level).strip().lower(),
            reload=reload,
        )


@dataclass(frozen=True)
class AppConfig:
    pipeline: PipelineConfig
    kinds: dict[str, PipelineConfig]
    limits: LimitsConfig
    recovery: RecoveryConfig
    agents: AgentsConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    source_path: str = field(default="")

    def pipeline_for(self, kind: str) -> PipelineConfig:
        return self.kinds.get(kind, self.pipeline)


def default_config_path() -> Path:
    return Path(os.getenv("OUTREACH_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _fallback_config_path() -> Path:
    # Packaged default lives at `<repo>/config/default.toml`.
    return Path(__file__).resolve().parents[2] / "config" / "default.toml"


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if path is None and not cfg_path.exists() and not os.getenv("OUTREACH_CONFIG_PATH"):
        cfg_path = _fallback_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    return parse_app_config(raw, source_path=str(cfg_path))


def parse_app_config(raw: dict[str, Any], *, source_path: str = "") -> AppConfig:
    pipeline_raw = dict(raw.get("pipeline", {}) or {})
    kinds_raw = dict(pipeline_raw.pop("kinds", {}) or {})
    limits = raw.get("limits", {})
    recovery = raw.get("recovery", {})
    agents = raw.get("agents", {})
    server = dict(raw.get("server", {}) or {})

    pipeline = PipelineConfig.from_dict(pipeline_raw)

    kinds: dict[str, PipelineConfig] = {}
    for kind, overrides in kinds_raw.items():
        if kind not in UNIT_KINDS:
            raise ConfigError(f"Unknown pipeline kind override: {kind!r}")
        kinds[kind] = PipelineConfig.from_dict(dict(overrides or {}), key=f"pipeline.kinds.{kind}", base=pipeline)

    return AppConfig(
        pipeline=pipeline,
        kinds=kinds,
        limits=LimitsConfig(
            max_units_per_batch=_require_min(
                _as_int(limits.get("max_units_per_batch"), key="limits.max_units_per_batch"),
                key="limits.max_units_per_batch",
                min_v=1,
            ),
            units_list_default_limit=_as_int(
                limits.get("units_list_default_limit"), key="limits.units_list_default_limit"
            ),
            units_list_max_limit=_as_int(limits.get("units_list_max_limit"), key="limits.units_list_max_limit"),
        ),
        recovery=RecoveryConfig(
            stale_after_s=_as_float(recovery.get("stale_after_s"), key="recovery.stale_after_s"),
            reconcile_on_startup=_as_bool(
                recovery.get("reconcile_on_startup", False), key="recovery.reconcile_on_startup"
            ),
        ),
        agents=AgentsConfig(
            temperature=_as_float(agents.get("temperature"), key="agents.temperature"),
            discovery_prompt_template=_as_str(
                agents.get("discovery_prompt_template"), key="agents.discovery_prompt_template"
            ),
            enrichment_prompt_template=_as_str(
                agents.get("enrichment_prompt_template"), key="agents.enrichment_prompt_template"
            ),
            artifact_prompt_template=_as_str(
                agents.get("artifact_prompt_template"), key="agents.artifact_prompt_template"
            ),
            image_model=_as_str(agents.get("image_model"), key="agents.image_model"),
            image_size=_as_str(agents.get("image_size"), key="agents.image_size"),
        ),
        server=ServerConfig(
            host=_as_str(server.get("host", ServerConfig.host), key="server.host"),
            port=_require_min(_as_int(server.get("port", ServerConfig.port), key="server.port"), key="server.port", min_v=1),
            log_level=_as_str(server.get("log_level", ServerConfig.log_level), key="server.log_level").lower(),
            reload=_as_bool(server.get("reload", ServerConfig.reload), key="server.reload"),
        ),
        source_path=source_path,
    )
