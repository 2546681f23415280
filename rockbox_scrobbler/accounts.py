"""
Account store: API keys per service and the accounts to scrobble to.

JSON file, e.g.
    {"services": {"lastfm": {"api_key": "...", "api_secret": "..."}},
     "accounts": [{"service": "lastfm", "username": "me", "password_md5": "..."}]}

Passwords are never stored in clear, only their MD5 (what the mobile-session
handshake needs).
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterator, List

import pylast

from rockbox_scrobbler.lastfm_client import SERVICE_URLS, AccountBinding, ServiceEndpoint, endpoint_for

DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".config", "rockbox-2-lastfm", "config.json")


class ConfigError(Exception): ...


@dataclass
class ServiceKeys:
    api_key: str
    api_secret: str


@dataclass
class Config:
    services: Dict[str, ServiceKeys] = field(default_factory=dict)
    accounts: List[AccountBinding] = field(default_factory=list)

    # -------- services --------
    def set_service_keys(self, service: str, api_key: str, api_secret: str) -> None:
        _check_service(service)
        self.services[service] = ServiceKeys(api_key, api_secret)

    def endpoint(self, service: str) -> ServiceEndpoint:
        keys = self.services.get(service)
        try:
            return endpoint_for(service, keys.api_key if keys else None, keys.api_secret if keys else None)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    # -------- accounts --------
    def add_account(self, service: str, username: str, password: str) -> None:
        """Add or replace an account; the password is kept only as its MD5."""
        _check_service(service)
        binding = AccountBinding(service=service, username=username, password_md5=pylast.md5(password))
        for i, existing in enumerate(self.accounts):
            if existing.service == service and existing.username == username:
                self.accounts[i] = binding
                return
        self.accounts.append(binding)

    def remove_account(self, service: str, username: str) -> bool:
        before = len(self.accounts)
        self.accounts = [a for a in self.accounts if not (a.service == service and a.username == username)]
        return len(self.accounts) != before

    def iter_accounts(self, service: str | None = None, username: str | None = None) -> Iterator[AccountBinding]:
        for account in self.accounts:
            if service and account.service != service:
                continue
            if username and account.username != username:
                continue
            yield account


def _check_service(service: str) -> None:
    if service not in SERVICE_URLS:
        raise ConfigError(f"Unsupported service: {service} (expected one of {', '.join(SERVICE_URLS)})")


def load_config(path: str | os.PathLike) -> Config:
    path = os.fspath(path)
    if not os.path.isfile(path):
        return Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return Config(
            services={name: ServiceKeys(**keys) for name, keys in (raw.get("services") or {}).items()},
            accounts=[AccountBinding(**a) for a in raw.get("accounts") or []],
        )
    except (OSError, json.JSONDecodeError, TypeError, AttributeError) as e:
        raise ConfigError(f"Failed reading config at {path}: {e}") from e


def save_config(config: Config, path: str | os.PathLike) -> None:
    path = os.fspath(path)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    data = {
        "services": {name: asdict(keys) for name, keys in config.services.items()},
        "accounts": [{k: v for k, v in asdict(a).items() if v is not None} for a in config.accounts],
    }
    # Write atomically to avoid corruption
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.write("\n")
    os.replace(tmp, path)
