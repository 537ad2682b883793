"""
InvoiceFlow -- Configuration Module

Centralizes configuration for the follow-up scheduling engine.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from invoiceflow.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.store.resolved_db_path)
    print(cfg.mailer.batch_limit)              # 500
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # invoiceflow/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
PACKAGE_DIR = _THIS_DIR
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


# ===================================================================
# 1. Store
# ===================================================================

@dataclass
class StoreSettings:
    """SQLite store location and safety settings."""
    db_path: str = ""                       # empty -> $INVOICEFLOW_DB_PATH or invoiceflow.db
    busy_timeout_ms: int = 5000

    # Second line of defense behind the self-healing default-schedule
    # logic: UNIQUE(user_id) WHERE is_default = 1 on the schedules table.
    enforce_unique_default: bool = True

    def __post_init__(self):
        self.db_path = (
            self.db_path or os.environ.get("INVOICEFLOW_DB_PATH", "") or "invoiceflow.db"
        )

    @property
    def resolved_db_path(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 2. Rendering
# ===================================================================

@dataclass
class RenderingSettings:
    """Formatting locale and the HTML layout handed to the mailer."""
    locale: str = "en-US"
    template_dir: str = ""                  # empty -> packaged templates/
    html_template: str = "follow_up.html"

    @property
    def resolved_template_dir(self) -> Path:
        if not self.template_dir:
            return PACKAGE_DIR / "templates"
        p = Path(self.template_dir)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 3. Mailer collaborator
# ===================================================================

@dataclass
class MailerSettings:
    """Limits applied when the external mailer polls for due follow-ups."""
    batch_limit: int = 500
    max_follow_ups_per_day_per_invoice: int = 1


# ===================================================================
# 4. Logging
# ===================================================================

@dataclass
class LoggingSettings:
    """Passed straight to logging.basicConfig by the CLI."""
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class InvoiceFlowConfig:
    """Top-level configuration container."""
    store: StoreSettings = field(default_factory=StoreSettings)
    rendering: RenderingSettings = field(default_factory=RenderingSettings)
    mailer: MailerSettings = field(default_factory=MailerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: InvoiceFlowConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto an InvoiceFlowConfig instance."""
    _section_map = {
        "store": cfg.store,
        "rendering": cfg.rendering,
        "mailer": cfg.mailer,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> InvoiceFlowConfig:
    """Build an InvoiceFlowConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated InvoiceFlowConfig instance.
    """
    cfg = InvoiceFlowConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
