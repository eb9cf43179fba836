"""Provider gateways."""

from stackvm.gateway.base import ProviderGateway
from stackvm.gateway.openstack import OpenStackGateway

__all__ = ["ProviderGateway", "OpenStackGateway"]
