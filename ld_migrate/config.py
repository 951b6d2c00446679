"""Configuration models and environment variable parsing for the project migrator."""

import json
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_DOMAIN = "app.launchdarkly.com"


def parse_environment_mapping(value: str | None) -> dict[str, str]:
    """Parse an environment mapping in 'source1:dest1,source2:dest2' form.

    Args:
        value: Raw mapping string, e.g. "prod:production,dev:development".

    Returns:
        Mapping of source environment key to destination environment key.

    Raises:
        ValueError: If an entry is not of the form "source:dest".
    """
    mapping: dict[str, str] = {}
    if not value:
        return mapping

    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        source, _, dest = entry.partition(":")
        source, dest = source.strip(), dest.strip()
        if not source or not dest:
            raise ValueError(
                f'Invalid environment mapping format: "{entry}". '
                'Expected format: "source:dest" (e.g., "prod:production")'
            )
        mapping[source] = dest
    return mapping


class InstanceConfig(BaseModel):
    """Configuration for one side (source or destination) of a migration."""

    model_config = ConfigDict(populate_by_name=True)

    project_key: str | None = Field(
        default=None, alias="projectKey", description="Project key on this instance"
    )
    domain: str = Field(default=DEFAULT_DOMAIN, description="Instance hostname")
    api_key: str | None = Field(
        default=None, alias="apiKey", description="API access token"
    )

    @field_validator("domain")
    def validate_domain(cls, v: str) -> str:
        """Strip scheme and trailing slashes so the domain is a bare hostname."""
        v = v.strip()
        for scheme in ("https://", "http://"):
            if v.startswith(scheme):
                v = v[len(scheme) :]
        v = v.rstrip("/")
        if not v:
            raise ValueError("Domain cannot be empty")
        return v

    @field_validator("api_key")
    def validate_api_key(cls, v: str | None) -> str | None:
        """Validate that an API key, when given, is not empty."""
        if v is None:
            return v
        if v.strip() == "":
            raise ValueError("API key cannot be empty")
        return v.strip()


class MigrationOptions(BaseModel):
    """What to migrate and how to name it in the destination."""

    model_config = ConfigDict(populate_by_name=True)

    assign_maintainer_ids: bool = Field(
        default=False,
        alias="assignMaintainerIds",
        description="Map flag maintainers through the maintainer mapping file",
    )
    migrate_segments: bool = Field(
        default=True, alias="migrateSegments", description="Migrate segments"
    )
    conflict_prefix: str | None = Field(
        default=None,
        alias="conflictPrefix",
        description="Prefix applied to keys that already exist in the destination",
    )
    target_view: str | None = Field(
        default=None,
        alias="targetView",
        description="View key every migrated flag is linked to",
    )
    environments: list[str] | None = Field(
        default=None, description="Source environment keys to migrate (None = all)"
    )
    environment_mapping: dict[str, str] = Field(
        default_factory=dict,
        alias="environmentMapping",
        description="Source environment key -> destination environment key",
    )
    dry_run: bool = Field(
        default=False, alias="dryRun", description="Read-only planning run"
    )

    @field_validator("conflict_prefix", "target_view")
    def empty_to_none(cls, v: str | None) -> str | None:
        """Treat blank strings as unset."""
        if v is not None and v.strip() == "":
            return None
        return v

    @field_validator("environments", mode="before")
    def split_environments(cls, v):
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [e.strip() for e in v.split(",") if e.strip()] or None
        return v

    @field_validator("environment_mapping", mode="before")
    def parse_mapping(cls, v):
        """Accept the 'src:dest,src2:dest2' CLI form as well as a dict."""
        if isinstance(v, str):
            return parse_environment_mapping(v)
        if v is None:
            return {}
        return v


class MigrationConfig(BaseModel):
    """Configuration for request and retry behavior."""

    retry_attempts: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Number of retry attempts for network failures",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.1,
        le=30.0,
        description="Initial delay between network retries in seconds",
    )
    max_concurrent: int = Field(
        default=1,
        ge=1,
        le=20,
        description="Maximum number of flags migrated concurrently",
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="HTTP request timeout in seconds"
    )
    not_found_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for a patch that returns 404 right after creation",
    )
    not_found_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Fixed delay before retrying a 404 patch, in seconds",
    )


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format (json or text)")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Config(BaseModel):
    """Main configuration class for the project migrator."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    source: InstanceConfig = Field(default_factory=InstanceConfig)
    destination: InstanceConfig = Field(default_factory=InstanceConfig)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    data_dir: Path = Field(
        default=Path("./data/launchdarkly-migrations"),
        alias="dataDir",
        description="Root of the extracted source data and mapping files",
    )
    report_dir: Path = Field(
        default=Path("./reports"),
        alias="reportDir",
        description="Directory where migration reports are written",
    )

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables.

        Only credentials and endpoints come from the environment; project keys
        and options are normally given on the command line.

        Returns:
            Config instance populated from environment variables.
        """
        return cls(
            source=InstanceConfig(
                project_key=os.getenv("LD_SOURCE_PROJECT") or None,
                domain=os.getenv("LD_SOURCE_DOMAIN", DEFAULT_DOMAIN),
                api_key=os.getenv("LD_SOURCE_API_KEY") or None,
            ),
            destination=InstanceConfig(
                project_key=os.getenv("LD_DEST_PROJECT") or None,
                domain=os.getenv("LD_DEST_DOMAIN", DEFAULT_DOMAIN),
                api_key=os.getenv("LD_DEST_API_KEY") or None,
            ),
            migration=MigrationConfig(
                retry_attempts=int(os.getenv("MIGRATION_RETRY_ATTEMPTS", "3")),
                retry_delay=float(os.getenv("MIGRATION_RETRY_DELAY", "1.0")),
                max_concurrent=int(os.getenv("MIGRATION_MAX_CONCURRENT", "1")),
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                format=os.getenv("LOG_FORMAT", "text"),
            ),
            data_dir=Path(
                os.getenv("MIGRATION_DATA_DIR", "./data/launchdarkly-migrations")
            ),
            report_dir=Path(os.getenv("MIGRATION_REPORT_DIR", "./reports")),
        )

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Create configuration from a YAML or JSON file.

        API keys missing from the file are filled in from the environment so
        that secrets do not have to live next to the migration settings.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config instance populated from the file

        Raises:
            ValueError: If the file format is unsupported or the content is invalid
            FileNotFoundError: If the configuration file doesn't exist
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        file_extension = config_path.suffix.lower()

        try:
            with open(config_path) as f:
                if file_extension == ".json":
                    config_data = json.load(f)
                elif file_extension in [".yaml", ".yml"]:
                    config_data = yaml.safe_load(f)
                else:
                    raise ValueError(
                        f"Unsupported configuration file format: {file_extension}. "
                        "Supported formats: .json, .yaml, .yml"
                    )
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {e}") from e
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        config_data = config_data or {}
        for side, env_var in (("source", "LD_SOURCE_API_KEY"), ("destination", "LD_DEST_API_KEY")):
            section = config_data.setdefault(side, {}) or {}
            config_data[side] = section
            if not section.get("api_key") and not section.get("apiKey"):
                if os.getenv(env_var):
                    section["api_key"] = os.getenv(env_var)

        try:
            return cls.model_validate(config_data)
        except Exception as e:
            raise ValueError(f"Failed to load configuration file: {e}") from e
