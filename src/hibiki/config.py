"""Configuration loading and management for hibiki."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class ChatConfig:
    template: str = ""  # "" = model default; a registered name or inline Jinja source
    add_generation_prompt: bool = True
    bos_token: str = ""  # used only when the model does not define one
    eos_token: str = ""


@dataclass
class SamplingConfig:
    seed: int = 0xFFFFFFFF  # 0xFFFFFFFF = random seed
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_keep: int = 0
    penalty_last_n: int = 64
    penalty_repeat: float = 1.0
    penalty_freq: float = 0.0
    penalty_present: float = 0.0


@dataclass
class NgramConfig:
    ngram_min: int = 1
    ngram_max: int = 4
    n_draft: int = 8
    static_cache: str = ""  # path to a static n-gram cache, "" = none


@dataclass
class HibikiConfig:
    chat: ChatConfig = field(default_factory=ChatConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    ngram: NgramConfig = field(default_factory=NgramConfig)


def load_config(config_path: str | Path | None = None) -> HibikiConfig:
    """Load configuration from TOML file, falling back to defaults.

    Search order:
    1. Bundled config.default.toml
    2. Explicit config_path argument, else ~/.config/hibiki/config.toml
    3. HIBIKI_CHAT_TEMPLATE environment variable
    """
    config = HibikiConfig()

    default_path = Path(__file__).parent / "config.default.toml"
    if default_path.exists():
        _merge_toml(config, default_path)

    if config_path:
        user_path = Path(config_path).expanduser()
        if not user_path.exists():
            raise FileNotFoundError(f"Config file not found: {user_path}")
    else:
        user_path = Path.home() / ".config" / "hibiki" / "config.toml"

    if user_path.exists():
        _merge_toml(config, user_path)

    env_template = os.environ.get("HIBIKI_CHAT_TEMPLATE")
    if env_template:
        config.chat.template = env_template

    return config


def _merge_toml(config: HibikiConfig, path: Path) -> None:
    """Merge a TOML file into the config, overwriting only specified fields."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    for section in fields(config):
        values = data.get(section.name)
        if not isinstance(values, dict):
            continue
        target = getattr(config, section.name)
        for key, value in values.items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.warning("Unknown config key %s.%s in %s", section.name, key, path)
