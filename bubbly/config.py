# bubbly/config.py
import yaml
import os
import logging
from dotenv import load_dotenv
from typing import Dict, List, Any, Optional

from bubbly.internal.storage.json_store import DEFAULT_MAX_CACHED_DOCUMENTS

CONFIG_FILE_NAME = 'bubbly_config.yaml'
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), CONFIG_FILE_NAME)

DEFAULT_HISTORY_LIMIT = 1000
DEFAULT_LOCATION_URL_TEMPLATE = 'https://google.com/maps?q={latitude},{longitude}'

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class AppConfig:
    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path or os.getenv('BUBBLY_CONFIG') or DEFAULT_CONFIG_PATH
        self._raw_config: Dict[str, Any] = self._load_config_from_file()
        self._configure_logging()

    def _load_config_from_file(self) -> Dict[str, Any]:
        try:
            with open(self._config_path, 'r') as f:
                config_data = yaml.safe_load(f)
                logger.info(f"Successfully loaded configuration from {self._config_path}")
                return config_data or {}
        except FileNotFoundError:
            logger.error(f"Configuration file not found at {self._config_path}. Using default values or environment variables where possible.")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML configuration file {self._config_path}: {e}")
            return {}

    def _configure_logging(self):
        log_level_str = os.getenv('LOG_LEVEL', self._raw_config.get('log_level', 'INFO')).upper()
        numeric_level = getattr(logging, log_level_str, logging.INFO)
        logging.basicConfig(level=numeric_level,
                            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logger.info(f"Logging level set to {log_level_str}")

    def _section(self, name: str) -> Dict[str, Any]:
        return self._raw_config.get(name) or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get a top-level configuration value."""
        return self._raw_config.get(key, default)

    # --- API Server Config ---
    def get_api_host(self) -> str:
        return os.getenv('API_HOST', self._section('api_server').get('default_host', '127.0.0.1'))

    def get_api_port(self) -> int:
        env_port = os.getenv('API_PORT')
        if env_port:
            try:
                return int(env_port)
            except ValueError:
                logger.warning(f"Invalid API_PORT environment variable: {env_port}. Falling back to config.")
        return int(self._section('api_server').get('default_port', 3000))

    def get_cors_origins(self) -> List[str]:
        return self._section('cors').get('allow_origins', ['*'])

    # --- Storage Config ---
    def get_data_dir(self) -> str:
        data_dir = os.getenv('DATA_DIR', self._section('storage').get('data_dir', 'data'))
        if not os.path.isabs(data_dir):
            # Relative paths are resolved against the directory holding the config file
            data_dir = os.path.join(os.path.dirname(os.path.abspath(self._config_path)), data_dir)
        return data_dir

    def get_history_limit(self) -> int:
        env_limit = os.getenv('HISTORY_LIMIT')
        if env_limit:
            try:
                return max(1, int(env_limit))
            except ValueError:
                logger.warning(f"Invalid HISTORY_LIMIT environment variable: {env_limit}. Falling back to config.")
        return max(1, int(self._section('storage').get('history_limit', DEFAULT_HISTORY_LIMIT)))

    def is_cache_enabled(self) -> bool:
        return bool(self._section('storage').get('cache_enabled', True))

    def get_max_cached_documents(self) -> int:
        return max(1, int(self._section('storage').get('max_cached_documents', DEFAULT_MAX_CACHED_DOCUMENTS)))

    # --- Message Config ---
    def requires_message_id(self) -> bool:
        env_flag = os.getenv('REQUIRE_MESSAGE_ID')
        if env_flag is not None:
            return _env_flag(env_flag)
        return bool(self._section('messages').get('require_message_id', True))

    def get_location_url_template(self) -> str:
        return self._section('messages').get('location_url_template', DEFAULT_LOCATION_URL_TEMPLATE)


# Global config instance
# Load config when module is imported. Applications should import this instance.
app_config = AppConfig()
