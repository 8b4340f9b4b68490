"""
Process-wide configuration.

Settings are read from the environment once at startup and then passed by
reference to every component that needs them. Nothing reads os.environ
while a request is being handled.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

TOKEN_TTL_SECONDS = 3 * 24 * 3600
COOKIE_NAME = 'token'


class ConfigurationError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    secret: str
    db_path: str = './data'
    production: bool = False
    host: str = '0.0.0.0'
    port: int = 8000
    token_ttl: int = TOKEN_TTL_SECONDS
    log_level: str = 'INFO'
    cascade_recheck_attempts: int = 2
    cookie_name: str = COOKIE_NAME

    def __post_init__(self):
        if not self.secret:
            raise ConfigurationError("SECRET must be set to sign session tokens")
        if self.token_ttl <= 0:
            raise ConfigurationError("TOKEN_TTL_SECONDS must be positive")
        if self.cascade_recheck_attempts < 0:
            raise ConfigurationError("CASCADE_RECHECK_ATTEMPTS cannot be negative")

    @property
    def cookie_samesite(self) -> str:
        return 'None' if self.production else 'Lax'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        mode = env.get('NODE_ENV') or env.get('APP_ENV') or 'development'
        try:
            return cls(
                secret=env.get('SECRET', ''),
                db_path=env.get('DB_PATH', './data'),
                production=mode.lower() == 'production',
                host=env.get('HOST', '0.0.0.0'),
                port=int(env.get('PORT', 8000)),
                token_ttl=int(env.get('TOKEN_TTL_SECONDS', TOKEN_TTL_SECONDS)),
                log_level=env.get('LOG_LEVEL', 'INFO').upper(),
                cascade_recheck_attempts=int(env.get('CASCADE_RECHECK_ATTEMPTS', 2)),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    def with_overrides(self, **changes) -> 'Settings':
        return replace(self, **changes)
