"""
═══════════════════════════════════════════════════════════
 MediQueue — Configuration
 Credentials (Streamlit secrets → environment), typed system
 settings, and logging setup. Settings arrive from the backend as
 loosely typed strings; they are coerced here exactly once.
═══════════════════════════════════════════════════════════
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import streamlit as st

from errors import ConfigError

log = logging.getLogger("mediqueue.config")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s | %(message)s"


def setup_logging(level=None):
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


# ═══════════════════════════════════════════════════
#  CREDENTIALS
# ═══════════════════════════════════════════════════
def load_credentials():
    """Return (url, key) for the Supabase project."""
    try:
        url = st.secrets["SUPABASE_URL"]
        key = st.secrets["SUPABASE_KEY"]
    except Exception:
        url = os.environ.get("SUPABASE_URL", "")
        key = os.environ.get("SUPABASE_KEY", "")
    if not url or not key:
        raise ConfigError("Missing Supabase credentials (SUPABASE_URL / SUPABASE_KEY).")
    return url, key


# ═══════════════════════════════════════════════════
#  COERCION
# ═══════════════════════════════════════════════════
def as_bool(value, default=False):
    """True for True or the string "true" (any case); default when unset."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().strip('"').lower() == "true"
    return bool(value)


def as_float(value, default, key=""):
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        log.warning("Setting %s=%r is not a number; using %s", key, value, default)
        return default


def as_text(value, default=None):
    if value is None:
        return default
    text = str(value).strip().strip('"')
    return text or default


# ═══════════════════════════════════════════════════
#  SYSTEM SETTINGS
# ═══════════════════════════════════════════════════
@dataclass(frozen=True)
class SystemSettings:
    clinic_name: str = "Hospital"
    enable_voice_announcements: bool = False
    enable_announcements: bool = True
    enable_announcement_chime: bool = False
    use_native_voice: bool = True
    voice_rate: float = 1.0
    voice_pitch: float = 1.0
    voice_volume: float = 0.8
    voice_language: str = "en-GB"
    announcement_template: Optional[str] = None
    staff_access_own_department: bool = False
    allow_cross_department_transfer: bool = False
    enable_auto_print: bool = False
    enable_silent_printing: bool = False

    @property
    def announcements_on(self):
        return self.enable_announcements and self.enable_voice_announcements

    @classmethod
    def keys(cls):
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_mapping(cls, raw):
        values = {}
        for f in fields(cls):
            if f.name not in raw:
                continue
            value = raw[f.name]
            if f.type is bool:
                values[f.name] = as_bool(value, f.default)
            elif f.type is float:
                values[f.name] = as_float(value, f.default, f.name)
            else:
                values[f.name] = as_text(value, f.default)
        return cls(**values)

    @classmethod
    def from_rows(cls, rows):
        """Build from `system_settings` rows of (setting_key, setting_value)."""
        return cls.from_mapping({r["setting_key"]: r.get("setting_value") for r in rows or []})
