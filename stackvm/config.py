"""Lifecycle configuration and YAML descriptor loading."""

import logging
import os
from dataclasses import dataclass, fields

import yaml

from stackvm.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Standard OpenStack client env vars used when the config file omits a field
_ENV_FALLBACKS = {
    "identity_endpoint": ("OS_AUTH_URL",),
    "username": ("OS_USERNAME",),
    "password": ("OS_PASSWORD",),
    "region": ("OS_REGION_NAME",),
    "tenant_name": ("OS_TENANT_NAME", "OS_PROJECT_NAME"),
}

_REQUIRED_FIELDS = [
    "identity_endpoint",
    "username",
    "password",
    "region",
    "tenant_name",
    "flavor_name",
    "floating_ip_pool",
]


@dataclass
class LifecycleConfig:
    """Timeouts and polling parameters, in seconds."""

    action_timeout: float = 900
    image_upload_timeout: float = 900
    volume_timeout: float = 900
    ssh_timeout: float = 900
    poll_interval: float = 5
    ssh_port: int = 22

    @classmethod
    def from_dict(cls, data: dict | None) -> "LifecycleConfig":
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown timeout settings: {', '.join(sorted(unknown))}")
        return cls(**data)


def load_config(config_path: str):
    """Load a VM descriptor and lifecycle config from a YAML file.

    Returns:
        (VMDescriptor, LifecycleConfig) tuple.

    Expected layout::

        vm:
          flavor_name: m1.small
          floating_ip_pool: public
          ...
        timeouts:
          action_timeout: 600
    """
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Config file '{config_path}' not found.") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing YAML config: {e}") from e

    if not isinstance(raw, dict) or "vm" not in raw:
        raise ConfigurationError(f"Missing 'vm' section in {config_path}")

    vm_section = dict(raw["vm"] or {})
    user_data_file = vm_section.pop("user_data_file", None)
    if user_data_file:
        try:
            with open(_expand_path(user_data_file), "rb") as f:
                vm_section["user_data"] = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read user_data_file '{user_data_file}': {e}") from e
    elif isinstance(vm_section.get("user_data"), str):
        vm_section["user_data"] = vm_section["user_data"].encode()

    for key in ("image_path",):
        if vm_section.get(key):
            vm_section[key] = _expand_path(vm_section[key])
    creds = vm_section.get("credentials") or {}
    if creds.get("private_key_path"):
        creds["private_key_path"] = _expand_path(creds["private_key_path"])

    apply_env_fallbacks(vm_section)
    descriptor = _descriptor_from_section(vm_section)
    config = LifecycleConfig.from_dict(raw.get("timeouts"))
    return descriptor, config


def _descriptor_from_section(section):
    from stackvm.provisioning.types import VMDescriptor

    # user_data is already bytes here; from_dict expects base64 for strings
    user_data = section.pop("user_data", b"")
    descriptor = VMDescriptor.from_dict(section)
    descriptor.user_data = user_data
    return descriptor


def apply_env_fallbacks(section: dict, environ=None) -> dict:
    """Fill empty identity fields from OS_* environment variables."""
    environ = os.environ if environ is None else environ
    for key, env_vars in _ENV_FALLBACKS.items():
        if section.get(key):
            continue
        for var in env_vars:
            if environ.get(var):
                section[key] = environ[var]
                break
    return section


def validate_descriptor(descriptor) -> None:
    """Raise ConfigurationError naming every missing required field."""
    missing = [name for name in _REQUIRED_FIELDS if not getattr(descriptor, name)]
    if not descriptor.image_id and not descriptor.image_metadata.name:
        missing.append("image_id or image_metadata.name")
    if missing:
        raise ConfigurationError(f"Missing required VM fields: {', '.join(missing)}")


def _expand_path(path: str) -> str:
    """Expand user home directory and environment variables in path."""
    return os.path.expanduser(os.path.expandvars(path))
