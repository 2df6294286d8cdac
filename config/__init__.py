"""
Configuration loader for the crypto assistant service.

Non-secret settings live in `config.json` next to this module and are exposed as the in-memory
`CONFIG` dictionary. Secrets (LLM and data-provider API keys) are only read from the process
environment, optionally populated from a `.env` file by python-dotenv. API keys are deliberately
not validated at import time: a missing LLM key is reported when a query starts, and a missing
data-provider key only degrades the provider chain. Structural problems in `config.json` are
reported immediately so the process fails fast on a broken deployment.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .logging_config import setup_app_logging

# Load environment variables from .env file
load_dotenv()

CONFIG_DIR = Path(__file__).parent
PROJECT_ROOT = CONFIG_DIR.parent

config_path = CONFIG_DIR / 'config.json'
with open(config_path, 'r', encoding='utf-8') as f:
    CONFIG: Dict[str, Any] = json.load(f)

CONFIG['project_root'] = str(PROJECT_ROOT)

# --- System Prompt Loading ---
CONFIG['prompts'] = {}
for prompt_name in ('classification', 'summary'):
    prompt_path = CONFIG_DIR / f'{prompt_name}_system_prompt.txt'
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            CONFIG['prompts'][prompt_name] = f.read().strip()
    except FileNotFoundError:
        raise FileNotFoundError(
            f"System prompt file not found: {prompt_path}\n"
            f"Please ensure {prompt_path.name} exists in the config directory."
        )

# Environment variable names per service. The first non-empty variable wins.
API_KEY_ENV_VARS: Dict[str, List[str]] = {
    'openai': ['OPENAI_API_KEY', 'LLM_API_KEY'],
    'nebius': ['NEBIUS_API_KEY', 'LLM_API_KEY'],
    'coingecko': ['COINGECKO_API_KEY'],
    'coinmarketcap': ['COINMARKETCAP_API_KEY'],
    'web_search': ['WEB_SEARCH_API_KEY'],
}


def get_api_key(service: str) -> Optional[str]:
    """
    Return the API key for a service from the environment, or None when it is not set.

    The environment is read on every call so that tests and long-running processes observe
    changes made after import.
    """
    for var_name in API_KEY_ENV_VARS.get(service, []):
        value = os.getenv(var_name, '')
        if value:
            return value
    return None


def validate_config():
    """Validate that the required configuration sections are present.

    Only structure is checked here. Credentials are checked by the orchestrator at the start of
    each query (LLM) and by the provider factory (market data and web search).
    """
    required_sections = ['llm', 'market_data', 'conversation', 'context', 'orchestrator']
    for section in required_sections:
        if section not in CONFIG:
            raise ValueError(f"Missing configuration section: {section}")

    required_models = ['classification', 'summary']
    for model in required_models:
        if model not in CONFIG['llm'].get('models', {}):
            raise ValueError(f"Missing configuration for LLM model: {model}")

    for provider in CONFIG['market_data'].get('providers', []):
        if provider not in CONFIG['market_data']:
            raise ValueError(f"Missing configuration for market data provider: {provider}")


# Validate configuration on module import
validate_config()


def get_config_value(json_keys: list, env_var_name: str, default_value: Any = None):
    """
    Retrieves a configuration value.
    Priority:
    1. Environment variable (if env_var_name is provided and variable is set).
    2. Value from CONFIG dictionary (using json_keys).
    3. default_value.
    """
    if env_var_name:
        env_value = os.getenv(env_var_name)
        if env_value is not None:
            if isinstance(default_value, bool):
                if env_value.lower() == 'true':
                    return True
                if env_value.lower() == 'false':
                    return False
            elif isinstance(default_value, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass
            elif isinstance(default_value, float):
                try:
                    return float(env_value)
                except ValueError:
                    pass
            return env_value

    current_level = CONFIG
    try:
        for key in json_keys:
            current_level = current_level[key]
        if current_level is not None:
            return current_level
    except (KeyError, TypeError):
        pass

    return default_value


# Rate-limit budgets may be tuned per deployment without editing config.json.
for _provider in ('coingecko', 'coinmarketcap'):
    if _provider in CONFIG['market_data']:
        CONFIG['market_data'][_provider]['rate_limit'] = get_config_value(
            ['market_data', _provider, 'rate_limit'], f'{_provider.upper()}_RATE_LIMIT', 30
        )

# --- Logging Configuration ---
CONFIG['logging'] = {
    'level': get_config_value(['logging', 'level'], 'LOG_LEVEL', 'INFO'),
    'file_path': get_config_value(['logging', 'file_path'], 'LOG_FILE_PATH', 'logs/assistant.log'),
    'max_bytes': get_config_value(['logging', 'max_bytes'], 'LOG_MAX_BYTES', 5 * 1024 * 1024),
    'backup_count': get_config_value(['logging', 'backup_count'], 'LOG_BACKUP_COUNT', 3),
}

setup_app_logging(config=CONFIG.get('logging'))

config_init_logger = logging.getLogger(__name__)
config_init_logger.info("[config_init] Logging initialized from config/__init__.py")
