"""racehero_etl.config

Environment-backed settings.  Values are read once at startup and passed
explicitly to the client, cache and store; nothing reads os.environ later.

Environment variables (a .env file in the working directory is honoured):
  API_BASE_URL, ORGANIZATION, API_USERNAME, API_PASSWORD
  JSON_OUTPUT_DIR, CSV_OUTPUT_DIR, FORCE_DOWNLOAD
  DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv
from psycopg.conninfo import make_conninfo

from racehero_etl.shared import ConfigError

ADMIN_DATABASE = "postgres"

_TRUE_VALUES = {"true", "1", "yes", "on"}

# Settings field -> environment variable
ENV_VARS = {
    "api_base_url": "API_BASE_URL",
    "organization": "ORGANIZATION",
    "api_username": "API_USERNAME",
    "api_password": "API_PASSWORD",
    "json_output_dir": "JSON_OUTPUT_DIR",
    "csv_output_dir": "CSV_OUTPUT_DIR",
    "force_download": "FORCE_DOWNLOAD",
    "db_host": "DB_HOST",
    "db_port": "DB_PORT",
    "db_user": "DB_USER",
    "db_password": "DB_PASSWORD",
    "db_name": "DB_NAME",
}


@dataclass(frozen=True)
class Settings:
    api_base_url: str | None = None
    organization: str | None = None
    api_username: str | None = None
    api_password: str = ""
    json_output_dir: Path | None = None
    csv_output_dir: Path = Path("csv")
    force_download: bool = False
    db_host: str | None = None
    db_port: int = 5432
    db_user: str | None = None
    db_password: str | None = None
    db_name: str | None = None

    def require(self, *names: str) -> None:
        """Raise ConfigError listing every named setting that is unset."""
        missing = [n for n in names if getattr(self, n) in (None, "")]
        if missing:
            env_names = ", ".join(ENV_VARS.get(n, n) for n in missing)
            raise ConfigError(f"missing required configuration: {env_names}")

    def database_conninfo(self, dbname: str | None = None) -> str:
        """libpq conninfo for the target database (or dbname when given)."""
        self.require("db_host", "db_user", "db_name")
        params = {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "dbname": dbname or self.db_name,
        }
        if self.db_password:
            params["password"] = self.db_password
        return make_conninfo(**params)


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from env (defaults to os.environ after loading .env).

    No validation happens here; callers use Settings.require() before
    touching a collaborator that needs a value.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    def get(name: str) -> str | None:
        value = env.get(ENV_VARS[name])
        return value.strip() if value and value.strip() else None

    defaults = {f.name: f.default for f in fields(Settings)}
    json_dir = get("json_output_dir")
    csv_dir = get("csv_output_dir")
    port = get("db_port")

    try:
        db_port = int(port) if port else defaults["db_port"]
    except ValueError:
        raise ConfigError(f"DB_PORT must be an integer, got {port!r}") from None

    return Settings(
        api_base_url=get("api_base_url"),
        organization=get("organization"),
        api_username=get("api_username"),
        api_password=env.get("API_PASSWORD") or "",
        json_output_dir=Path(json_dir) if json_dir else None,
        csv_output_dir=Path(csv_dir) if csv_dir else defaults["csv_output_dir"],
        force_download=_parse_bool(env.get("FORCE_DOWNLOAD")),
        db_host=get("db_host"),
        db_port=db_port,
        db_user=get("db_user"),
        db_password=env.get("DB_PASSWORD"),
        db_name=get("db_name"),
    )
