"""Configuration management for the storage pool daemon."""

import os
import json
import logging
import tempfile
import threading
from typing import Dict, Any, Optional, List
from pathlib import Path
from dataclasses import dataclass, asdict, field

from .exceptions import ConfigurationError
from .models import (
    MAX_COPIES, ChecksumMismatchPolicy, DestinationPolicy, Share
)


logger = logging.getLogger(__name__)


@dataclass
class PoolConfig:
    """Storage pool configuration data structure."""
    storage_pool_drives: List[str] = field(default_factory=list)
    shares: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    database_url: str = "sqlite:////var/lib/greypool/greypool.db"
    max_workers: int = 4
    destination_policy: str = DestinationPolicy.MOST_AVAILABLE_SPACE.value
    min_free_space_bytes: int = 10 * 1024 * 1024 * 1024  # 10 GB
    adopt_orphans: bool = True
    checksum_mismatch_policy: str = ChecksumMismatchPolicy.KEEP.value
    metastore_backup_count: int = 2
    fsck_schedule: str = "0 3 * * 0"  # Weekly on Sunday at 3 AM
    free_space_refresh_seconds: int = 300
    restart_command: List[str] = field(default_factory=lambda: ["systemctl", "restart", "smbd"])
    log_level: str = "INFO"
    log_json: bool = False
    notification_config_path: str = "/etc/greypool/notifications.json"
    api_host: str = "127.0.0.1"
    api_port: int = 8787


class ConfigManager:
    """Manages configuration loading, validation, and persistence."""

    # Environment variable mappings
    ENV_MAPPINGS = {
        'GREYPOOL_STORAGE_POOL_DRIVES': 'storage_pool_drives',
        'GREYPOOL_SHARES': 'shares',
        'GREYPOOL_DATABASE_URL': 'database_url',
        'GREYPOOL_MAX_WORKERS': 'max_workers',
        'GREYPOOL_DESTINATION_POLICY': 'destination_policy',
        'GREYPOOL_MIN_FREE_SPACE_BYTES': 'min_free_space_bytes',
        'GREYPOOL_ADOPT_ORPHANS': 'adopt_orphans',
        'GREYPOOL_CHECKSUM_MISMATCH_POLICY': 'checksum_mismatch_policy',
        'GREYPOOL_METASTORE_BACKUP_COUNT': 'metastore_backup_count',
        'GREYPOOL_FSCK_SCHEDULE': 'fsck_schedule',
        'GREYPOOL_FREE_SPACE_REFRESH_SECONDS': 'free_space_refresh_seconds',
        'GREYPOOL_RESTART_COMMAND': 'restart_command',
        'GREYPOOL_LOG_LEVEL': 'log_level',
        'GREYPOOL_LOG_JSON': 'log_json',
        'GREYPOOL_NOTIFICATION_CONFIG': 'notification_config_path',
        'GREYPOOL_API_HOST': 'api_host',
        'GREYPOOL_API_PORT': 'api_port',
    }

    LIST_KEYS = {'GREYPOOL_STORAGE_POOL_DRIVES', 'GREYPOOL_RESTART_COMMAND'}
    INT_KEYS = {
        'GREYPOOL_MAX_WORKERS', 'GREYPOOL_MIN_FREE_SPACE_BYTES',
        'GREYPOOL_METASTORE_BACKUP_COUNT', 'GREYPOOL_FREE_SPACE_REFRESH_SECONDS',
        'GREYPOOL_API_PORT',
    }
    BOOL_KEYS = {'GREYPOOL_ADOPT_ORPHANS', 'GREYPOOL_LOG_JSON'}

    def __init__(self, config_file_path: Optional[str] = None):
        """
        Initialize the ConfigManager.

        Args:
            config_file_path: Optional path to a JSON configuration file
        """
        self.config_file_path = config_file_path
        self._config: Optional[PoolConfig] = None
        self._lock = threading.RLock()

    def load_config(self) -> PoolConfig:
        """
        Load configuration from defaults, the config file and environment variables.

        Returns:
            PoolConfig object with loaded configuration

        Raises:
            ConfigurationError: If the resulting configuration is invalid
        """
        with self._lock:
            if self._config:
                return self._config

            config_dict = asdict(PoolConfig())

            if self.config_file_path and os.path.exists(self.config_file_path):
                config_dict.update(self._load_config_file(self.config_file_path))

            config_dict.update(self._load_from_environment())

            unknown = set(config_dict) - set(PoolConfig.__dataclass_fields__)
            for key in sorted(unknown):
                logger.warning(f"Ignoring unknown configuration key: {key}")
                config_dict.pop(key)

            config = PoolConfig(**config_dict)
            self._normalize_paths(config)
            self._validate_config(config)
            self._config = config
            logger.info("Configuration loaded successfully")
            return config

    def reload_config(self) -> PoolConfig:
        """Force reload configuration from its sources."""
        with self._lock:
            self._config = None
            return self.load_config()

    def save_config(self, config: PoolConfig, file_path: Optional[str] = None) -> bool:
        """
        Save configuration to a JSON file atomically.

        Args:
            config: Configuration to save
            file_path: Optional file path (uses the loaded path if not specified)

        Returns:
            True if successful, False otherwise
        """
        target_path = file_path or self.config_file_path
        if not target_path:
            logger.error("No config file path specified for saving")
            return False

        try:
            path_obj = Path(target_path)
            path_obj.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=str(path_obj.parent), suffix='.json')
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(asdict(config), f, indent=2)
                os.replace(temp_path, target_path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

            logger.info(f"Configuration saved to {target_path}")
            return True

        except Exception as e:
            logger.error(f"Error saving configuration to {target_path}: {e}")
            return False

    def get_shares(self) -> Dict[str, Share]:
        """
        Build Share objects from the shares section.

        Returns:
            Dictionary of share name to Share
        """
        config = self.load_config()
        shares = {}
        for name, options in config.shares.items():
            shares[name] = Share(
                name=name,
                landing_zone=options['landing_zone'],
                num_copies=self._parse_num_copies(options.get('num_copies', 1)),
                drives=[os.path.normpath(path) for path in options.get('drives') or []],
            )
        return shares

    def remove_storage_pool_drive(self, drive_path: str) -> bool:
        """
        Remove a drive from the pool and from every share's drive list, then save.

        Args:
            drive_path: Mount path of the drive to remove

        Returns:
            True if the persisted configuration no longer lists the drive
        """
        drive_path = os.path.normpath(drive_path)
        with self._lock:
            config = self.load_config()
            if drive_path not in config.storage_pool_drives:
                logger.info(f"{drive_path} is already absent from the storage pool configuration")
                return bool(self.config_file_path)
            config.storage_pool_drives.remove(drive_path)
            for options in config.shares.values():
                drives = options.get('drives') or []
                if drive_path in drives:
                    drives.remove(drive_path)
            logger.info(f"Removed {drive_path} from the storage pool configuration")

            if not self.config_file_path:
                return False
            return self.save_config(config)

    def _load_config_file(self, file_path: str) -> Dict[str, Any]:
        """
        Load configuration from a JSON file.

        Args:
            file_path: Path to configuration file

        Returns:
            Dictionary of configuration values

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {file_path} must contain a JSON object")
        return data

    def _load_from_environment(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Returns:
            Dictionary of configuration values from environment
        """
        config = {}

        for env_key, config_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                config[config_key] = self._parse_env_value(env_key, env_value)

        return config

    def _parse_env_value(self, env_key: str, value: str) -> Any:
        """
        Parse environment variable value to appropriate type.

        Args:
            env_key: Environment variable key
            value: String value from environment

        Returns:
            Parsed value in appropriate type
        """
        # Comma-separated lists
        if env_key in self.LIST_KEYS:
            return [item.strip() for item in value.split(',') if item.strip()]

        if env_key == 'GREYPOOL_SHARES':
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                raise ConfigurationError(f"Invalid JSON for {env_key}")

        if env_key in self.BOOL_KEYS:
            return value.lower() in {'true', '1', 'yes', 'on'}

        if env_key in self.INT_KEYS:
            try:
                return int(value)
            except ValueError:
                raise ConfigurationError(f"Invalid integer for {env_key}: {value}")

        return value

    @staticmethod
    def _parse_num_copies(value: Any) -> int:
        if isinstance(value, str):
            if value.strip().lower() == 'max':
                return MAX_COPIES
            value = int(value)
        return int(value)

    @staticmethod
    def _normalize_paths(config: PoolConfig) -> None:
        """Drop trailing slashes and redundant separators so drive paths compare equal."""
        config.storage_pool_drives = [
            os.path.normpath(path) if isinstance(path, str) else path
            for path in config.storage_pool_drives
        ]
        for options in config.shares.values():
            if not isinstance(options, dict):
                continue
            if isinstance(options.get('landing_zone'), str):
                options['landing_zone'] = os.path.normpath(options['landing_zone'])
            if options.get('drives'):
                options['drives'] = [
                    os.path.normpath(path) if isinstance(path, str) else path
                    for path in options['drives']
                ]

    def _validate_config(self, config: PoolConfig) -> None:
        """
        Validate configuration values.

        Args:
            config: Configuration to validate

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if config.max_workers <= 0:
            raise ConfigurationError("max_workers must be positive")

        if config.metastore_backup_count < 0:
            raise ConfigurationError("metastore_backup_count must not be negative")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if config.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(f"Invalid log level: {config.log_level}")

        try:
            DestinationPolicy(config.destination_policy)
        except ValueError:
            raise ConfigurationError(f"Invalid destination policy: {config.destination_policy}")

        try:
            ChecksumMismatchPolicy(config.checksum_mismatch_policy)
        except ValueError:
            raise ConfigurationError(
                f"Invalid checksum mismatch policy: {config.checksum_mismatch_policy}"
            )

        for drive_path in config.storage_pool_drives:
            if not os.path.isabs(drive_path):
                raise ConfigurationError(f"Path must be absolute: {drive_path}")

        for name, options in config.shares.items():
            if not isinstance(options, dict) or 'landing_zone' not in options:
                raise ConfigurationError(f"Share {name} needs a landing_zone")
            if not os.path.isabs(options['landing_zone']):
                raise ConfigurationError(f"Path must be absolute: {options['landing_zone']}")
            try:
                num_copies = self._parse_num_copies(options.get('num_copies', 1))
            except (TypeError, ValueError):
                raise ConfigurationError(f"Invalid num_copies for share {name}")
            if num_copies != MAX_COPIES and num_copies < 1:
                raise ConfigurationError(f"num_copies for share {name} must be at least 1")
            for drive_path in options.get('drives') or []:
                if drive_path not in config.storage_pool_drives:
                    raise ConfigurationError(
                        f"Share {name} lists {drive_path}, which is not a storage pool drive"
                    )

        logger.debug("Configuration validation passed")
