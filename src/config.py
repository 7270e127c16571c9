"""Engine configuration management.

Configuration is loaded from a single YAML file. Discovery order:
1. --config command-line flag
2. $CONVERGE_CONFIG environment variable
3. ./converge.yaml (working directory)
4. ~/.config/converge/config.yaml

If no file is found, defaults apply (in-memory backend for every kind).

    concurrency: 10
    on_error: stop
    state_dir: .states
    report_dir: reports
    retry: {max_attempts: 4, base_delay: 1.0, max_delay: 30.0, jitter: 0.2}
    default_backend: sim
    backends:
      sim: {type: memory, path: .states/sim-objects.json}
      cloud: {type: http, endpoint: https://cloud.example.com/api/v1, token_env: CLOUD_TOKEN}
    kinds:
      database: {backend: cloud, force_new: [engine, storage.type], computed: [endpoint]}
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from backends import BackendRegistry, HttpBackend, InMemoryBackend, ResourceSchema
from reconcile.executor import ON_ERROR_MODES, RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'CONVERGE_CONFIG'
BACKEND_TYPES = ('memory', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class BackendSettings:
    """One named backend connection.

    Attributes:
        name: Name referenced by kinds and default_backend
        type: memory or http
        endpoint: Base URL (http only)
        token_env: Environment variable holding the bearer token (http only)
        timeout: Per-request timeout in seconds (http only)
        verify: Verify TLS certificates (http only)
        path: JSON file the simulated objects persist to (memory only)
    """
    name: str
    type: str = 'memory'
    endpoint: str = ''
    token_env: str = ''
    timeout: float = 30.0
    verify: bool = True
    path: Optional[Path] = None

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'BackendSettings':
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"backends.{name} must be a mapping")
        settings = cls(
            name=name,
            type=data.get('type', 'memory'),
            endpoint=data.get('endpoint', ''),
            token_env=data.get('token_env', ''),
            timeout=_number(data.get('timeout', 30.0), f'backends.{name}.timeout'),
            verify=bool(data.get('verify', True)),
            path=Path(data['path']) if data.get('path') else None,
        )
        if settings.type not in BACKEND_TYPES:
            raise ConfigError(
                f"backends.{name}.type must be one of {', '.join(BACKEND_TYPES)}, got '{settings.type}'")
        if settings.type == 'http' and not settings.endpoint:
            raise ConfigError(f"backends.{name}: http backend requires an endpoint")
        return settings

    def get_token(self) -> str:
        """Resolve the bearer token from the environment."""
        if not self.token_env:
            return ''
        token = os.environ.get(self.token_env, '')
        if not token:
            logger.warning(f"Backend '{self.name}': ${self.token_env} is not set")
        return token


@dataclass
class KindSettings:
    """Binding of one resource kind: backend name plus schema table."""
    kind: str
    backend: Optional[str] = None
    force_new: list[str] = field(default_factory=list)
    computed: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, kind: str, data: Optional[dict]) -> 'KindSettings':
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"kinds.{kind} must be a mapping")
        for key in ('force_new', 'computed'):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
                raise ConfigError(f"kinds.{kind}.{key} must be a list of attribute paths")
        return cls(
            kind=kind,
            backend=data.get('backend'),
            force_new=list(data.get('force_new', [])),
            computed=list(data.get('computed', [])),
        )


@dataclass
class EngineConfig:
    """Resolved engine configuration."""
    concurrency: int = 10
    on_error: str = 'stop'
    state_dir: Path = field(default_factory=lambda: Path('.states'))
    report_dir: Path = field(default_factory=lambda: Path('reports'))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    backends: dict[str, BackendSettings] = field(default_factory=dict)
    kinds: dict[str, KindSettings] = field(default_factory=dict)
    default_backend: Optional[str] = None
    config_file: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'EngineConfig':
        """Build configuration from parsed YAML.

        Raises:
            ConfigError: If a value is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a YAML mapping")

        concurrency = data.get('concurrency', 10)
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {concurrency!r}")

        on_error = data.get('on_error', 'stop')
        if on_error not in ON_ERROR_MODES:
            raise ConfigError(f"on_error must be one of {', '.join(ON_ERROR_MODES)}, got '{on_error}'")

        retry_data = data.get('retry') or {}
        if not isinstance(retry_data, dict):
            raise ConfigError("retry must be a mapping")
        retry = RetryPolicy(
            max_attempts=int(_number(retry_data.get('max_attempts', 4), 'retry.max_attempts')),
            base_delay=_number(retry_data.get('base_delay', 1.0), 'retry.base_delay'),
            max_delay=_number(retry_data.get('max_delay', 30.0), 'retry.max_delay'),
            jitter=_number(retry_data.get('jitter', 0.2), 'retry.jitter'),
        )
        if retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")

        backends = {name: BackendSettings.from_dict(name, b)
                    for name, b in (data.get('backends') or {}).items()}
        kinds = {kind: KindSettings.from_dict(kind, k)
                 for kind, k in (data.get('kinds') or {}).items()}

        default_backend = data.get('default_backend')
        references = [('default_backend', default_backend)]
        references += [(f'kinds.{k.kind}.backend', k.backend) for k in kinds.values()]
        for where, name in references:
            if name is not None and name not in backends:
                raise ConfigError(f"{where}: unknown backend '{name}'")

        return cls(
            concurrency=concurrency,
            on_error=on_error,
            state_dir=Path(data.get('state_dir', '.states')),
            report_dir=Path(data.get('report_dir', 'reports')),
            retry=retry,
            backends=backends,
            kinds=kinds,
            default_backend=default_backend,
            config_file=config_file,
        )


def _number(value, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{where} must be a non-negative number, got {value!r}")
    return float(value)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Discover the configuration file.

    Resolution order:
    1. explicit path (--config)
    2. $CONVERGE_CONFIG environment variable
    3. ./converge.yaml
    4. ~/.config/converge/config.yaml
    """
    if explicit:
        path = Path(explicit)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit}")

    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV_VAR}={env_path} does not exist")

    local = Path.cwd() / 'converge.yaml'
    if local.exists():
        return local

    user = Path.home() / '.config' / 'converge' / 'config.yaml'
    if user.exists():
        return user

    return None


def load_config(explicit: Optional[str] = None) -> EngineConfig:
    """Load configuration, falling back to defaults when no file exists."""
    path = find_config_file(explicit)
    if path is None:
        logger.debug("No config file found; using defaults")
        return EngineConfig()
    logger.debug(f"Loading config from {path}")
    return EngineConfig.from_dict(_parse_yaml(path), config_file=path)


def build_registry(config: EngineConfig) -> BackendRegistry:
    """Construct backends and bind resource kinds.

    Without any configured backend, a single in-memory backend serves
    every kind.
    """
    instances = {}
    for name, settings in config.backends.items():
        if settings.type == 'http':
            instances[name] = HttpBackend(
                endpoint=settings.endpoint,
                token=settings.get_token() or None,
                timeout=settings.timeout,
                verify=settings.verify,
            )
        else:
            instances[name] = InMemoryBackend(path=settings.path)

    default = None
    if config.default_backend:
        default = instances[config.default_backend]
    elif not config.backends:
        default = InMemoryBackend(path=config.state_dir / 'memory-backend.json')

    registry = BackendRegistry(default=default)
    for kind, settings in config.kinds.items():
        backend = instances[settings.backend] if settings.backend else default
        if backend is None:
            raise ConfigError(f"kinds.{kind}: no backend given and no default_backend set")
        registry.bind(kind, backend, ResourceSchema.from_dict(kind, {
            'force_new': settings.force_new,
            'computed': settings.computed,
        }))
    return registry
