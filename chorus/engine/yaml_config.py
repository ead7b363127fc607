"""YAML configuration loader.

Loads a single YAML file describing engine settings, default turn
settings, and per-agent overrides. When no YAML is provided, env vars
(EngineConfig.from_env) work exactly as before.

Example YAML:
    engine:
      agent_command: claude
      session_max_age_days: 25
      event_queue_size: 1000
      store_dir: ~/.chorus/conversations

    defaults:
      permission_mode: default
      model: default
      allowed_tools: [Read, Grep, Glob]

    agents:
      reviewer:
        permission_mode: plan
        model: claude-sonnet-4-5
        system_prompt_file: .chorus/agents/reviewer.md
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .models import PermissionMode, TurnSettings

logger = logging.getLogger(__name__)


@dataclass
class ChorusConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    defaults: TurnSettings
    agents: dict[str, TurnSettings] = field(default_factory=dict)

    def settings_for(self, agent_id: str) -> TurnSettings:
        """Turn settings for *agent_id*, falling back to defaults."""
        return self.agents.get(agent_id, self.defaults)


def parse_permission_mode(value: str | None) -> str:
    """Normalize a permission mode string to the CLI's spelling."""
    mapping = {
        "default": PermissionMode.DEFAULT,
        "acceptEdits": PermissionMode.ACCEPT_EDITS,
        "accept_edits": PermissionMode.ACCEPT_EDITS,
        "bypassPermissions": PermissionMode.BYPASS,
        "bypass": PermissionMode.BYPASS,
        "plan": PermissionMode.PLAN,
    }
    if value is None:
        return PermissionMode.DEFAULT.value
    mode = mapping.get(str(value))
    if mode is None:
        logger.warning("Unknown permission mode %r, using default", value)
        return PermissionMode.DEFAULT.value
    return mode.value


def _parse_settings(
    raw: dict[str, Any],
    base: TurnSettings,
    config_dir: Path,
) -> TurnSettings:
    """Overlay a raw settings mapping onto *base*."""
    updates: dict[str, Any] = {}
    if "permission_mode" in raw:
        updates["permission_mode"] = parse_permission_mode(raw["permission_mode"])
    if "model" in raw:
        updates["model"] = str(raw["model"] or "default")
    if "allowed_tools" in raw:
        tools = raw["allowed_tools"] or []
        if isinstance(tools, str):
            tools = [t.strip() for t in tools.split(",") if t.strip()]
        updates["allowed_tools"] = tuple(str(t) for t in tools)
    if "system_prompt_file" in raw:
        prompt_file = raw["system_prompt_file"]
        if prompt_file:
            prompt_path = Path(prompt_file).expanduser()
            if not prompt_path.is_absolute():
                prompt_path = config_dir / prompt_path
            updates["system_prompt_file"] = str(prompt_path)
        else:
            updates["system_prompt_file"] = None
    return replace(base, **updates)


def load_yaml_config(path: str | Path) -> ChorusConfig:
    """Load and parse a YAML config file.

    Relative ``system_prompt_file`` paths are resolved against the
    directory containing *path*.
    """
    path = Path(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")

    config_dir = path.parent

    # ── Engine config ──────────────────────────────────────────
    engine_raw = raw.get("engine", {}) or {}
    engine = EngineConfig(
        agent_command=str(engine_raw.get(
            "agent_command", EngineConfig.agent_command
        )),
        session_max_age_days=float(engine_raw.get(
            "session_max_age_days", EngineConfig.session_max_age_days
        )),
        event_queue_size=int(engine_raw.get(
            "event_queue_size", EngineConfig.event_queue_size
        )),
        read_chunk_size=int(engine_raw.get(
            "read_chunk_size", EngineConfig.read_chunk_size
        )),
        log_level=engine_raw.get("log_level", EngineConfig.log_level),
    )
    if engine_raw.get("store_dir"):
        engine.store_dir = str(Path(engine_raw["store_dir"]).expanduser())
    if isinstance(engine_raw.get("agent_env"), dict):
        engine.agent_env.update(
            {str(k): str(v) for k, v in engine_raw["agent_env"].items()}
        )

    # ── Defaults ───────────────────────────────────────────────
    defaults = _parse_settings(
        raw.get("defaults", {}) or {}, TurnSettings(), config_dir,
    )
    engine.default_settings = defaults

    # ── Per-agent overrides ────────────────────────────────────
    agents: dict[str, TurnSettings] = {}
    for agent_id, cfg in (raw.get("agents", {}) or {}).items():
        agents[str(agent_id)] = _parse_settings(cfg or {}, defaults, config_dir)

    logger.info(
        "Parsed YAML config %s: command=%s agents=%s",
        path.name, engine.agent_command,
        ", ".join(sorted(agents)) if agents else "(none)",
    )
    return ChorusConfig(engine=engine, defaults=defaults, agents=agents)
