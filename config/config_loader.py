import os
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .utils import parse_clock_time

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_ENV_VAR = 'PIVOT_TRADER_CONFIG'

REQUIRED_SECTIONS = ('broker', 'universe', 'session', 'strategy', 'risk', 'storage')
SESSION_DEFAULTS = {
    'recompute_start': '08:00',
    'recompute_end': '08:45',
    'start': '09:44',
    'end': '16:00',
    'order_cutoff': '15:30',
    'cleanup_at': '15:58',
}
SESSION_TIMES = tuple(SESSION_DEFAULTS)


class SectionProxy(Mapping):
    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if isinstance(value, dict):
            return SectionProxy(value)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML settings with ``${ENV}`` placeholders resolved from the environment.

    The file is ``config/config.yaml`` unless a path is given or
    ``PIVOT_TRADER_CONFIG`` points elsewhere. Placeholders whose variable is
    unset are kept verbatim so callers can tell "not configured" apart.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    @property
    def symbols(self) -> List[str]:
        return [str(symbol).upper() for symbol in self.section('universe').get('symbols') or []]

    def section(self, name: str) -> SectionProxy:
        """Return a section as a proxy, empty when the key is absent."""
        value = self._data.get(name)
        return SectionProxy(value if isinstance(value, dict) else {})

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        data = self._resolve_env_vars(raw)
        self._validate(data)
        return data

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
            env_key = node[2:-1]
            return os.getenv(env_key, node)
        return node

    def _validate(self, data: Dict[str, Any]) -> None:
        missing = [name for name in REQUIRED_SECTIONS if not isinstance(data.get(name), dict)]
        if missing:
            raise RuntimeError(f"{self.config_path}: missing section(s) {', '.join(missing)}")
        session = data['session']
        times = {}
        for key in SESSION_TIMES:
            try:
                times[key] = parse_clock_time(session.get(key), SESSION_DEFAULTS[key])
            except ValueError as exc:
                raise RuntimeError(f"{self.config_path}: session.{key}: {exc}") from exc
        # The cutoff must fall inside the session or no bar ever reaches it
        if not times['start'] < times['order_cutoff'] < times['end']:
            raise RuntimeError(
                f"{self.config_path}: session.order_cutoff must fall strictly between "
                f"session.start and session.end"
            )
        if not isinstance(data['universe'].get('symbols'), list):
            raise RuntimeError(f"{self.config_path}: universe.symbols must be a list")


config = Config()
