"""Classifier settings file.

Thresholds and the API key live in ``settings.yaml``. With
``ENCRYPT_SETTINGS=1`` the API key is kept in the OS keyring under the
``trainingage`` service and the YAML file only marks it as present.
"""
import os
from typing import Any, Optional

import yaml
import keyring

from settings_schema import ClassifierSettings, validate_settings

APP_VERSION = "1.0.0"

KEYRING_SERVICE = "trainingage"
KEYRING_PLACEHOLDER = True


class YamlConfig:
    """Classifier settings backed by a YAML file."""

    SECRET_KEYS = ("api_key",)

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"

    def _read_file(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _secret(self, key: str) -> Optional[str]:
        return keyring.get_password(KEYRING_SERVICE, key)

    def _store_secret(self, key: str, value: Any) -> bool:
        keyring.set_password(KEYRING_SERVICE, key, str(value))
        return KEYRING_PLACEHOLDER

    def load(self) -> dict:
        data = self._read_file()
        if not self.encrypt:
            return data
        for key in self.SECRET_KEYS:
            if key not in data:
                continue
            secret = self._secret(key)
            if secret is None:
                # placeholder without a keyring entry
                del data[key]
            else:
                data[key] = secret
        return data

    def save(self, data: dict) -> None:
        """Write ``data`` after validating it; secrets go to the keyring when enabled."""
        validate_settings(data)
        out = dict(data)
        if self.encrypt:
            for key in self.SECRET_KEYS:
                if key in out:
                    out[key] = self._store_secret(key, out[key])
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f, sort_keys=True)

    def settings(self) -> ClassifierSettings:
        return validate_settings(self.load())
