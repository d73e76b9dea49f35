"""
AppConfig builder for run_bot.py: defaults overridden by DOAT_* environment variables.
"""

from zoneinfo import ZoneInfo
import os

from common import AppConfig, log

ENV_PREFIX = "DOAT_"


def _get_env(varname, default, show=True):
    env_varname = f"{ENV_PREFIX}{varname}"
    value = os.environ.get(env_varname)
    if value:
        show_value = value if show else "..."
        log().info(f"doat: Read ({env_varname}: '{show_value!r}') --> cfg.{varname}")
        return value
    return default


def _get_env_bool(varname, default) -> bool:
    """Like _get_env() but tries to parse value into a bool"""

    value = _get_env(varname, None)

    if value:
        v = value.strip().lower()

        truthy = {"1", "true", "t", "yes", "y"}
        falsy = {"0", "false", "f", "no", "n"}

        if v in truthy:
            return True
        if v in falsy:
            return False

        raise ValueError(f"Invalid boolean env value: '{value!r}")

    assert isinstance(default, bool)
    return default


def _get_env_num(varname, default, kind=int):
    """Like _get_env() but parses with `kind` (int or float)."""
    value = _get_env(varname, None)
    if value is None:
        return default
    try:
        return kind(value.strip())
    except ValueError:
        raise ValueError(f"Invalid {kind.__name__} env value for {ENV_PREFIX}{varname}: '{value!r}") from None


def make_cfg() -> AppConfig:
    tz_name = _get_env("TZ", None)
    cfg = AppConfig(
        TZ_LOCAL=ZoneInfo(tz_name) if tz_name else None,
        DB_PATH=_get_env("DB_PATH", "doat_db.sqlite"),
        LOG_LEVEL=_get_env("LOG_LEVEL", "INFO").upper(),
        LOG_JSON=_get_env_bool("LOG_JSON", False),
        CONSOLE_ENABLED=_get_env_bool("CONSOLE_ENABLED", True),

        DISCORD_TOKEN=_get_env("DISCORD_TOKEN", None, show=False),
        DISCORD_API_BASE=_get_env("DISCORD_API_BASE", "https://discord.com/api/v10"),
        HTTP_TIMEOUT_SEC=_get_env_num("HTTP_TIMEOUT_SEC", 30.0, float),

        CONSOLE_GUILD_ID=_get_env("CONSOLE_GUILD_ID", None),
        CONSOLE_CHANNEL_ID=_get_env("CONSOLE_CHANNEL_ID", None),
        CONSOLE_USER_ID=_get_env("CONSOLE_USER_ID", None),

        ALARM_POLL_SEC=_get_env_num("ALARM_POLL_SEC", 0.5, float),
        ALARM_RETRY_BASE_SEC=_get_env_num("ALARM_RETRY_BASE_SEC", 2.0, float),
        ALARM_RETRY_MAX_SEC=_get_env_num("ALARM_RETRY_MAX_SEC", 300.0, float),
        DELIVERED_TTL_DAYS=_get_env_num("DELIVERED_TTL_DAYS", 14),
        LIST_LIMIT=_get_env_num("LIST_LIMIT", 15),
    )
    return cfg
