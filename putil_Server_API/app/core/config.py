# config.py
# Description: Configuration settings for the putil server application.
#
# Imports
import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Constants ---
# Device ID recorded in the sync log for writes made by the server itself (e.g. the trigger scanner)
SERVER_CLIENT_ID = "SERVER_API_V1"

_DEFAULT_API_KEY = "default-secret-key-for-single-user"
_DEFAULT_JWT_SECRET = "a_very_insecure_default_secret_key_for_dev_only"


def _config_file_path() -> Path:
    # __file__ is .../putil_Server_API/app/core/config.py, the project root is three levels up
    project_root = Path(__file__).resolve().parent.parent.parent
    return project_root / 'Config_Files' / 'config.txt'


def load_comprehensive_config(config_path: Optional[Path] = None) -> Optional[configparser.ConfigParser]:
    """
    Reads Config_Files/config.txt. Returns None when the file is absent, since every value
    it carries has an environment variable or a built-in default.
    """
    config_path_obj = config_path or _config_file_path()
    if not config_path_obj.exists():
        logger.info(f"No config file at {str(config_path_obj)}, using environment and defaults only.")
        return None

    config_parser = configparser.ConfigParser()
    try:
        config_parser.read(config_path_obj)
    except configparser.Error as e:
        logger.error(f"Error parsing config file {str(config_path_obj)}: {e}")
        raise

    logger.debug(f"load_comprehensive_config(): Sections found in config: {config_parser.sections()}")
    return config_parser


def _from_file(parser: Optional[configparser.ConfigParser], section: str, key: str, fallback: str) -> str:
    if parser is None:
        return fallback
    return parser.get(section, key, fallback=fallback)


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_settings(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Loads all settings from environment variables, the config file, or defaults into a dictionary."""
    parser = load_comprehensive_config(config_path)

    # --- Application Mode ---
    single_user_mode_str = os.getenv("APP_MODE", "single").lower()
    single_user_mode = single_user_mode_str != "multi"

    # --- Single-User Settings ---
    single_user_fixed_id = int(os.getenv("SINGLE_USER_FIXED_ID", "1"))
    single_user_api_key = os.getenv("API_KEY", _DEFAULT_API_KEY)

    # --- Multi-User Settings (JWT) ---
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", _DEFAULT_JWT_SECRET)
    jwt_algorithm = "HS256"

    # --- Database ---
    records_db_path = Path(os.getenv(
        "RECORDS_DB_PATH", _from_file(parser, "Server", "records_db_path", "./putil_data/records.db")))
    default_timezone = os.getenv(
        "DEFAULT_TIMEZONE", _from_file(parser, "Server", "default_timezone", "UTC"))
    cors_origins = os.getenv("CORS_ORIGINS", _from_file(parser, "Server", "cors_origins", "*"))

    # --- Sync ---
    sync_max_mutations = int(os.getenv(
        "SYNC_MAX_MUTATIONS", _from_file(parser, "Sync", "max_mutations", "500")))

    # --- Trigger Scanner ---
    scanner_enabled = _as_bool(os.getenv(
        "SCANNER_ENABLED", _from_file(parser, "Scanner", "enabled", "true")))
    scan_interval_seconds = int(os.getenv(
        "SCAN_INTERVAL_SECONDS", _from_file(parser, "Scanner", "interval_seconds", "60")))
    scanner_max_catchup = int(os.getenv(
        "SCANNER_MAX_CATCHUP", _from_file(parser, "Scanner", "max_catchup", "24")))
    notification_queue_size = int(os.getenv(
        "NOTIFICATION_QUEUE_SIZE", _from_file(parser, "Scanner", "notification_queue_size", "100")))

    # --- Logging ---
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    # --- Build the Settings Dictionary ---
    config_dict = {
        # General App
        "APP_MODE_STR": single_user_mode_str,
        "SINGLE_USER_MODE": single_user_mode,
        "LOG_LEVEL": log_level,
        "CORS_ORIGINS": [origin.strip() for origin in cors_origins.split(",") if origin.strip()],

        # Single User
        "SINGLE_USER_FIXED_ID": single_user_fixed_id,
        "SINGLE_USER_API_KEY": single_user_api_key,

        # Multi User / Auth
        "JWT_SECRET_KEY": jwt_secret_key,
        "JWT_ALGORITHM": jwt_algorithm,

        # Database
        "RECORDS_DB_PATH": records_db_path,
        "DEFAULT_TIMEZONE": default_timezone,

        # Sync
        "SYNC_MAX_MUTATIONS": sync_max_mutations,

        # Scanner
        "SCANNER_ENABLED": scanner_enabled,
        "SCAN_INTERVAL_SECONDS": scan_interval_seconds,
        "SCANNER_MAX_CATCHUP": scanner_max_catchup,
        "NOTIFICATION_QUEUE_SIZE": notification_queue_size,

        "SERVER_CLIENT_ID": SERVER_CLIENT_ID,
    }

    # --- Warnings ---
    if config_dict["SINGLE_USER_MODE"] and config_dict["SINGLE_USER_API_KEY"] == _DEFAULT_API_KEY:
        logger.warning("Using default API_KEY for single-user mode. Set the API_KEY environment variable for security.")
    if not config_dict["SINGLE_USER_MODE"] and config_dict["JWT_SECRET_KEY"] == _DEFAULT_JWT_SECRET:
        logger.warning("Using default JWT_SECRET_KEY in multi-user mode. Set a strong JWT_SECRET_KEY environment variable!")
    if config_dict["SCAN_INTERVAL_SECONDS"] <= 0:
        raise ValueError(f"SCAN_INTERVAL_SECONDS must be positive, got {config_dict['SCAN_INTERVAL_SECONDS']}")

    return config_dict


settings = load_settings()

#
# End of config.py
########################################################################################################################
