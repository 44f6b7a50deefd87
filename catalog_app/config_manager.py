# catalog_app/config_manager.py

import os
import sys
import pytomlpp
import logging
import argparse
from pathlib import Path
from typing import Optional, List, Dict, Any

import platformdirs
from pydantic import BaseModel, Field, ValidationError, field_validator
from dotenv import load_dotenv, find_dotenv, dotenv_values, set_key, unset_key

from .exceptions import ConfigError
from .ui_utils import ConfirmClass, make_console

log = logging.getLogger(__name__)
APP_NAME = "catalog_app"
APP_AUTHOR = "catalog_app"
DEFAULT_CONFIG_FILENAME = "config.toml"
DEFAULT_DOTENV_FILENAME = ".env"
API_KEY_SERVICES = ('tmdb', 'omdb')


class BaseProfileSettings(BaseModel):
    # Scanning
    video_extensions: Optional[List[str]] = Field(default_factory=lambda: [".mkv", ".mp4", ".avi", ".mov", ".wmv", ".m4v"], description="List of video file extensions picked up by the scanner.")
    min_file_size_mb: Optional[int] = Field(default=200, ge=0, description="Files smaller than this (MB) are ignored (samples, trailers).")
    ignore_dirs: Optional[List[str]] = Field(default_factory=list, description="List of exact directory names to skip.")
    ignore_patterns: Optional[List[str]] = Field(
        default_factory=lambda: ['.*', '*[sS]ample*'],
        description="List of glob patterns (e.g., '*.tmp', '.*') to ignore."
    )

    # Reconciliation
    use_metadata: Optional[bool] = Field(default=True, description="Fetch metadata from providers at all.")
    inline_metadata: Optional[bool] = Field(default=True, description="Resolve metadata during the rescan itself (otherwise only through the enrichment queue).")
    detect_relocations: Optional[bool] = Field(default=True, description="Treat a vanished catalog file reappearing in another folder (same name and size) as a move.")

    # API & Metadata Options
    api_rate_limit_delay: Optional[float] = Field(default=0.35, ge=0.0, description="Minimum delay (seconds) between two requests to the same provider.")
    api_rate_limit_backoff: Optional[float] = Field(default=2.0, ge=0.0, description="Wait (seconds) after an HTTP 429 before the single retry.")
    api_timeout_seconds: Optional[float] = Field(default=15.0, gt=0.0, description="Network timeout for provider requests.")
    api_year_tolerance: Optional[int] = Field(default=1, ge=0, description="Year tolerance for matching provider search results.")
    tmdb_match_fuzzy_cutoff: Optional[int] = Field(default=70, ge=0, le=100, description="Minimum fuzzy score for a TMDB search candidate.")
    cast_limit: Optional[int] = Field(default=10, ge=0, description="Cast members stored per record.")
    crew_limit: Optional[int] = Field(default=5, ge=0, description="Crew members (director/writer/producer) stored per record.")

    # Caching Options
    cache_enabled: Optional[bool] = Field(default=True, description="Enable persistent provider response caching.")
    cache_directory: Optional[str] = Field(default=None, description="Custom cache directory (default: user cache dir).")
    cache_expire_seconds: Optional[int] = Field(default=604800, ge=0, description="Cache expiration time in seconds (default: 7 days).")

    # Enrichment Queue
    enrichment_concurrency: Optional[int] = Field(default=2, ge=1, description="Concurrent enrichment workers.")
    enrichment_delay: Optional[float] = Field(default=0.2, ge=0.0, description="Pause (seconds) a worker takes between two items.")

    # Library
    library_db_path: Optional[str] = Field(default=None, description="Path to the library database (default: user data dir).")
    scan_job_max_entries: Optional[int] = Field(default=50, ge=1, description="Maximum scan jobs kept in memory.")
    scan_job_ttl_seconds: Optional[int] = Field(default=3600, ge=0, description="Seconds a finished scan job is kept before eviction.")

    # Logging Options
    log_file: Optional[str] = Field(default=None, description="Path to log file (e.g., catalog.log).")
    log_level: Optional[str] = Field(default='INFO', description="Logging level: DEBUG, INFO, WARNING, ERROR.")

    @field_validator('log_level', mode='before')
    @classmethod
    def check_log_level(cls, v: Any) -> Optional[str]:
        if v is not None and isinstance(v, str) and v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError("log_level must be one of DEBUG, INFO, WARNING, ERROR")
        return v.upper() if isinstance(v, str) else None

    @field_validator('video_extensions', mode='before')
    @classmethod
    def check_video_extensions(cls, v: Any) -> Optional[List[str]]:
        if v is None: return v
        if isinstance(v, str):
            v = [item.strip() for item in v.split(',') if item.strip()]
        if not isinstance(v, list):
            raise ValueError("video_extensions must be a list or comma-separated string")
        normalized = []
        for ext in v:
            ext = str(ext).strip().lower()
            if not ext: continue
            normalized.append(ext if ext.startswith('.') else f".{ext}")
        if not normalized:
            raise ValueError("video_extensions cannot be empty")
        return normalized


class DefaultSettings(BaseProfileSettings):
    pass

class RootConfigModel(BaseModel):
    default: DefaultSettings = Field(default_factory=DefaultSettings)
    model_config = {'extra': 'allow'}


def generate_default_toml_content() -> str:
    default_settings = DefaultSettings()
    content_lines = ["# Catalog Default Configuration File"]
    content_lines.append("# API keys live in .env (TMDB_API_KEY, OMDB_API_KEY); run 'setup' to create it.\n")

    sections: Dict[str, List[str]] = {
        "Scanning": ['video_extensions', 'min_file_size_mb', 'ignore_dirs', 'ignore_patterns'],
        "Reconciliation": ['use_metadata', 'inline_metadata', 'detect_relocations'],
        "API & Metadata Options": ['api_rate_limit_delay', 'api_rate_limit_backoff', 'api_timeout_seconds', 'api_year_tolerance', 'tmdb_match_fuzzy_cutoff', 'cast_limit', 'crew_limit'],
        "Caching Options": ['cache_enabled', 'cache_directory', 'cache_expire_seconds'],
        "Enrichment Queue": ['enrichment_concurrency', 'enrichment_delay'],
        "Library": ['library_db_path', 'scan_job_max_entries', 'scan_job_ttl_seconds'],
        "Logging Options": ['log_file', 'log_level'],
    }

    content_lines.append("[default]")
    for section_name, keys in sections.items():
        content_lines.append(f"\n  # --- {section_name} ---")
        for key in keys:
            field_info = BaseProfileSettings.model_fields.get(key)
            if not field_info:
                continue
            default_value = getattr(default_settings, key)
            if field_info.description:
                content_lines.append(f"  # {field_info.description}")

            toml_value_str: str
            if isinstance(default_value, str):
                escaped_default_value = default_value.replace('\\', '\\\\').replace('"', '\\"')
                toml_value_str = f'"{escaped_default_value}"'
            elif isinstance(default_value, bool):
                toml_value_str = str(default_value).lower()
            elif isinstance(default_value, list):
                list_items_str = []
                for item in default_value:
                    if isinstance(item, str): list_items_str.append(f'"{item}"')
                    elif isinstance(item, bool): list_items_str.append(str(item).lower())
                    else: list_items_str.append(str(item))
                toml_value_str = "[" + ", ".join(list_items_str) + "]"
            elif default_value is None:
                content_lines.append(f"  # {key} = (not set, uses internal default)")
                continue
            else:
                toml_value_str = str(default_value)

            content_lines.append(f"  {key} = {toml_value_str}")

    content_lines.append("\n# You can create other profiles and select them with --profile, e.g.:")
    content_lines.append("# [offline]")
    content_lines.append("# use_metadata = false")

    return "\n".join(content_lines)


def user_config_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME, APP_AUTHOR, ensure_exists=False)) / DEFAULT_CONFIG_FILENAME


class ConfigManager:
    def __init__(self, config_path_override: Optional[Path] = None, interactive_fallback: bool = False, quiet_mode: bool = False):
        self.console = make_console(quiet=quiet_mode)
        self.quiet_mode = quiet_mode

        self.config_path = self._resolve_config_path(config_path_override)
        self._raw_toml_content_str: Optional[str] = None
        self._config = self._load_config(interactive_fallback=interactive_fallback)
        self._api_keys = self._load_env_keys()
        log.debug(f"Config path used: {self.config_path}")

    def _resolve_config_path(self, config_path_override: Optional[Path]) -> Path:
        if config_path_override:
            p = Path(config_path_override).resolve()
            log.debug(f"Using explicit config path target: {p}")
            return p

        cwd_path = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if cwd_path.is_file():
            log.debug(f"Found config file in current directory: {cwd_path}")
            return cwd_path.resolve()

        user_path: Optional[Path] = None
        try:
            user_path = user_config_path()
            if user_path.is_file():
                log.debug(f"Found config file in user config directory: {user_path}")
                return user_path.resolve()
        except OSError as e:
            log.warning(f"Could not access or check user config directory: {e}")

        if user_path:
            log.debug(f"No config file found. Preferred default creation location: {user_path}")
            return user_path.resolve()
        return cwd_path.resolve()

    def _create_default_config_interactively(self, target_path: Path) -> bool:
        if self.quiet_mode:
            log.info("Quiet mode: Skipping interactive creation of default config file.")
            return False

        self.console.print("[yellow]Configuration file not found at an expected location.[/yellow]")
        self.console.print(f"A default configuration file can be created at:\n  [cyan]{target_path}[/cyan]")
        try:
            if not ConfirmClass.ask("Would you like to create a default configuration file now?", default=True):
                self.console.print("[yellow]Skipping default configuration file creation. Using internal defaults.[/yellow]")
                return False
            target_path.parent.mkdir(parents=True, exist_ok=True)
            target_path.write_text(generate_default_toml_content(), encoding="utf-8")
            self.console.print(f"[green]✓ Default configuration file created at: {target_path}[/green]")
            log.info(f"Default configuration file created at {target_path}")
            return True
        except OSError as e_io:
            log.error(f"Failed to write default config to {target_path}: {e_io}")
            return False
        except KeyboardInterrupt:
            log.warning("User cancelled config creation during interactive prompt.")
            return False

    def _defaults(self) -> Dict[str, Any]:
        return RootConfigModel().model_dump(exclude_unset=False, by_alias=False)

    def _load_config(self, interactive_fallback: bool = False) -> Dict[str, Any]:
        config_file_existed_initially = self.config_path.is_file()

        if not config_file_existed_initially and interactive_fallback:
            if not self._create_default_config_interactively(self.config_path):
                self._raw_toml_content_str = "# No configuration file present or created.\n"
                return self._defaults()

        if not self.config_path.is_file():
            log.info(f"Config file not found at '{self.config_path}'. Using internal defaults.")
            self._raw_toml_content_str = "# Config file not found.\n"
            return self._defaults()

        try:
            self._raw_toml_content_str = self.config_path.read_text(encoding='utf-8')
        except OSError as e_os:
            raise ConfigError(f"Failed to read config file '{self.config_path}': {e_os}")
        if not self._raw_toml_content_str.strip():
            log.warning(f"Config file '{self.config_path}' is empty. Using internal defaults.")
            return self._defaults()
        try:
            cfg_dict = pytomlpp.loads(self._raw_toml_content_str)
        except pytomlpp.DecodeError as e_toml:
            raise ConfigError(f"Failed to parse TOML config '{self.config_path}': {e_toml}")
        log.info(f"Loaded configuration from '{self.config_path}'")

        try:
            validated_config = RootConfigModel.model_validate(cfg_dict)
        except ValidationError as e_val:
            error_msgs = [f"  - Field `{' -> '.join(map(str, err['loc']))}`: {err['msg']}" for err in e_val.errors()]
            error_summary = f"Config file '{self.config_path}' validation failed:\n" + "\n".join(error_msgs)
            log.error(error_summary)
            raise ConfigError(error_summary) from e_val

        # Named profiles are free-form tables; validate each against the same model.
        dumped = validated_config.model_dump(exclude_unset=False, by_alias=False)
        for profile_name, section in list(dumped.items()):
            if profile_name == 'default' or not isinstance(section, dict):
                continue
            try:
                BaseProfileSettings.model_validate(section)
            except ValidationError as e_val:
                raise ConfigError(f"Profile '{profile_name}' in '{self.config_path}' is invalid: {e_val}") from e_val
        log.debug("Config validation successful.")
        return dumped

    def get_raw_toml_content(self) -> Optional[str]:
        return self._raw_toml_content_str

    def _load_env_keys(self) -> Dict[str, Optional[str]]:
        keys: Dict[str, Optional[str]] = {}
        env_path = find_dotenv(usecwd=True)
        if env_path:
            log.debug(f"Loading environment variables from: {env_path}")
            load_dotenv(dotenv_path=env_path)

        for service in API_KEY_SERVICES:
            value = os.getenv(f"{service.upper()}_API_KEY")
            keys[f"{service}_api_key"] = value.strip() if value else None
        keys['tmdb_language'] = os.getenv("TMDB_LANGUAGE")

        if any(v for k, v in keys.items() if k.endswith('_api_key')):
            log.info(f"Loaded API keys from {'.env file' if env_path else 'environment variables'}.")
        else:
            log.debug("No provider API keys (TMDB_API_KEY, OMDB_API_KEY) found in .env or environment.")
        return keys

    def get_value(self, key: str, profile: str = 'default', command_line_value: Any = None, default_value: Any = None) -> Any:
        if command_line_value is not None:
            return command_line_value

        if key == 'tmdb_language' and self._api_keys.get('tmdb_language'):
            return self._api_keys['tmdb_language']

        for section_name in (profile, 'default'):
            section = self._config.get(section_name, {})
            if isinstance(section, dict) and section.get(key) is not None:
                return section[key]

        if default_value is None and key in BaseProfileSettings.model_fields:
            field_info = BaseProfileSettings.model_fields[key]
            if field_info.default_factory is not None:
                return field_info.default_factory()
            return field_info.default
        return default_value

    def get_api_key(self, service_name: str) -> Optional[str]:
        return self._api_keys.get(f"{service_name.lower()}_api_key")

    def get_profile_settings(self, profile: str = 'default') -> Dict[str, Any]:
        final_settings = DefaultSettings().model_dump(exclude_unset=False, by_alias=False)
        for section_name in dict.fromkeys(('default', profile)):
            section = self._config.get(section_name, {})
            if not isinstance(section, dict):
                log.warning(f"Profile '{section_name}' in config is not a table. Skipping merge for it.")
                continue
            for k, v in section.items():
                if v is not None:
                    final_settings[k] = v
        if profile != 'default' and profile not in self._config:
            log.debug(f"Profile '{profile}' not found in config. Using default settings.")
        return final_settings


class ConfigHelper:
    def __init__(self, config_manager: ConfigManager, args_ns: argparse.Namespace):
        self.manager = config_manager
        self.args = args_ns
        self.profile = getattr(args_ns, 'profile', 'default') or 'default'

    def __call__(self, key: str, default_value: Any = None, arg_value: Any = None) -> Any:
        cmd_line_val = arg_value if arg_value is not None else getattr(self.args, key, None)
        return self.manager.get_value(key, self.profile, cmd_line_val, default_value)

    def get_api_key(self, service_name: str) -> Optional[str]:
        return self.manager.get_api_key(service_name)

    def get_list(self, key: str, default_value: Optional[List[Any]] = None) -> List[Any]:
        cmd_line_val_str = getattr(self.args, key, None)
        cmd_line_list: Optional[List[str]] = None
        if isinstance(cmd_line_val_str, str):
            cmd_line_list = [item.strip() for item in cmd_line_val_str.split(',') if item.strip()]

        val = self.manager.get_value(key, self.profile, cmd_line_list, None)
        if isinstance(val, list):
            return val
        if isinstance(val, str):
            return [item.strip() for item in val.split(',') if item.strip()]
        return default_value if isinstance(default_value, list) else []


def interactive_api_setup(dotenv_path_override: Optional[Path] = None, quiet_mode: bool = False) -> bool:
    console = make_console(quiet=quiet_mode)
    if quiet_mode:
        print("ERROR: Interactive API setup cannot run in quiet mode.", file=sys.stderr)
        return False

    resolved_dotenv_path: Path = dotenv_path_override.resolve() if dotenv_path_override else Path.cwd() / DEFAULT_DOTENV_FILENAME
    log.info(f"Starting interactive API setup. Target .env file: {resolved_dotenv_path}")
    console.print("--- API Key Setup ---")
    console.print(f"Keys are stored in '{resolved_dotenv_path}'. Press Enter to keep the current value.")

    current_values: Dict[str, Optional[str]] = {}
    if resolved_dotenv_path.is_file():
        current_values = dotenv_values(resolved_dotenv_path)

    keys_to_set = {
        "TMDB_API_KEY": "Enter your TMDB API key (v3)",
        "OMDB_API_KEY": "Enter your OMDb API key",
        "TMDB_LANGUAGE": "Enter default TMDB language (e.g., en-US, de-DE)",
    }
    updated_any = False
    try:
        for key, prompt in keys_to_set.items():
            current = current_values.get(key) or ""
            prompt_text = f"{prompt}{f' [current: {current}]' if current else ''}: "
            user_input = console.input(prompt_text).strip()
            if user_input:
                set_key(str(resolved_dotenv_path), key, user_input, quote_mode="never")
                console.print(f"  ✓ {key} set.")
                updated_any = True
            elif key in current_values and current_values[key] == "":
                unset_key(str(resolved_dotenv_path), key)
                console.print(f"  ✓ {key} removed (was empty).")
                updated_any = True
            else:
                console.print(f"  - {key} {'kept' if current else 'skipped'}.")
    except KeyboardInterrupt:
        console.print("\nSetup cancelled by user.")
        log.warning("API setup cancelled by user during input.")
        return False
    except OSError as e_io:
        log.error(f"IOError during API setup writing to {resolved_dotenv_path}: {e_io}", exc_info=True)
        console.print(f"\nError: Could not write to .env file at '{resolved_dotenv_path}'. Check permissions.")
        return False

    console.print(f"\nConfiguration saved to: {resolved_dotenv_path}" if updated_any else "\nNo changes made to .env file.")
    return True
