"""
YAML configuration loader with validation.

Loads source definitions from YAML files with:
- Environment variable substitution
- Tagged authentication and pagination blocks
- Default values
"""

import os
import re
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from grant_harvester.core.models import (
    ApiKeyAuth,
    AuthConfig,
    BasicAuth,
    BearerAuth,
    CursorPagination,
    EngineKind,
    OAuth2Auth,
    OffsetPagination,
    PagePagination,
    PaginationConfig,
    RateLimitConfig,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
)

logger = structlog.get_logger(__name__)

PAGINATION_TYPES = {
    "offset": OffsetPagination,
    "page": PagePagination,
    "cursor": CursorPagination,
}


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variables in text.

    Supports formats:
    - ${VAR_NAME} - required, warns and substitutes "" if missing
    - ${VAR_NAME:-default} - optional with default

    Args:
        text: Text with env var placeholders

    Returns:
        Text with substituted values
    """
    def replace(match):
        var_expr = match.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.getenv(var_name, default)
        value = os.getenv(var_expr)
        if value is None:
            logger.warning("env_var_not_set", var=var_expr)
            return ""
        return value

    return re.sub(r"\$\{([^}]+)\}", replace, text)


def _required(data: dict, key: str, context: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ValueError(f"Missing required field: {context}.{key}")
    return value


def parse_authentication(data: Optional[dict]) -> Optional[AuthConfig]:
    """
    Parse an ``authentication`` block.

    With ``optional: true`` a block whose credentials are empty (for
    example an unset environment variable) yields no authentication.

    Raises:
        ValueError: Unknown type or missing credential
    """
    if not data:
        return None

    auth_type = str(data.get("type", "")).lower().replace("_", "")
    optional = bool(data.get("optional", False))

    try:
        if auth_type == "bearer":
            return BearerAuth(token=_required(data, "token", "authentication"))
        if auth_type == "basic":
            return BasicAuth(
                username=_required(data, "username", "authentication"),
                password=_required(data, "password", "authentication"),
            )
        if auth_type == "apikey":
            return ApiKeyAuth(api_key=_required(data, "api_key", "authentication"))
        if auth_type == "oauth2":
            return OAuth2Auth(
                token_endpoint=_required(data, "token_endpoint", "authentication"),
                client_id=_required(data, "client_id", "authentication"),
                client_secret=_required(data, "client_secret", "authentication"),
                scope=data.get("scope"),
            )
    except ValueError:
        if optional:
            logger.info("optional_authentication_skipped", type=auth_type)
            return None
        raise

    raise ValueError(f"Unknown authentication type: {data.get('type')!r}")


def parse_pagination(data: Optional[dict]) -> Optional[PaginationConfig]:
    """
    Parse a ``pagination`` block.

    Raises:
        ValueError: Unknown type
    """
    if not data:
        return None
    pagination_type = str(data.get("type", "")).lower()
    cls = PAGINATION_TYPES.get(pagination_type)
    if cls is None:
        raise ValueError(f"Unknown pagination type: {data.get('type')!r}")

    kwargs = {}
    if "page_size" in data:
        kwargs["page_size"] = int(data["page_size"])
    if "max_pages" in data:
        kwargs["max_pages"] = int(data["max_pages"])
    return cls(**kwargs)


class ConfigLoader:
    """
    Configuration loader for grant sources.

    Loads YAML config files and turns each entry into a SourceConfiguration.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing config files
                       (defaults to package config directory)
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = Path(__file__).parent

    def load_file(self, filename: str) -> dict:
        """
        Load YAML config file.

        Args:
            filename: Config file name (relative to config_dir)

        Returns:
            Parsed config dict

        Raises:
            FileNotFoundError: File does not exist
        """
        filepath = self.config_dir / filename

        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        logger.info("loading_config", file=str(filepath))

        with open(filepath, "r", encoding="utf-8") as f:
            content = f.read()

        content = substitute_env_vars(content)
        config = yaml.safe_load(content)

        return config or {}

    def load_sources(self, filename: str = "sources.yml") -> list[SourceConfiguration]:
        """
        Load source definitions from YAML.

        Invalid entries are logged and skipped; disabled entries are ignored.

        Args:
            filename: Sources config file name

        Returns:
            List of SourceConfiguration objects
        """
        config = self.load_file(filename)

        sources = []
        for source_data in config.get("sources", []):
            if not source_data.get("enabled", True):
                logger.info("source_disabled", source_id=source_data.get("id"))
                continue
            try:
                source = self.parse_source(source_data)
            except (ValueError, TypeError) as e:
                logger.error(
                    "source_load_failed",
                    source=source_data.get("id", "unknown"),
                    error=str(e),
                )
                continue
            sources.append(source)
            logger.info("source_loaded", source_id=source.id, engine=source.engine.value)

        return sources

    def parse_source(self, data: dict) -> SourceConfiguration:
        """
        Parse source definition into SourceConfiguration.

        Args:
            data: Source definition dict

        Returns:
            SourceConfiguration object

        Raises:
            ValueError: Required field missing or a value is invalid
        """
        for key in ("id", "url"):
            _required(data, key, "source")

        rate_limit = data.get("rate_limit") or {}
        return SourceConfiguration(
            id=str(data["id"]),
            name=data.get("name"),
            url=str(data["url"]),
            type=SourceType(data.get("type", SourceType.OTHER.value)),
            engine=EngineKind(data.get("engine", EngineKind.STATIC.value)),
            selectors=SourceSelectors(**(data.get("selectors") or {})),
            rate_limit=RateLimitConfig(**rate_limit),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            authentication=parse_authentication(data.get("authentication")),
            pagination=parse_pagination(data.get("pagination")),
        )


def load_sources(config_path: Optional[str] = None) -> list[SourceConfiguration]:
    """
    Convenience function to load source configs.

    Args:
        config_path: Optional path to sources.yml

    Returns:
        List of SourceConfiguration objects
    """
    if config_path:
        loader = ConfigLoader(str(Path(config_path).parent))
        return loader.load_sources(Path(config_path).name)
    return ConfigLoader().load_sources()
