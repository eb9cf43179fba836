"""OpenStack provider gateway over the Keystone/Nova/Glance/Cinder/Neutron REST APIs."""

import asyncio
import base64
import logging
import os

import httpx

from stackvm.errors import AuthFailureError, ConfigurationError, NotFoundError, ProviderError
from stackvm.gateway.base import ProviderGateway
from stackvm.provisioning.types import VOLUME_DELETED, FloatingIP

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "Default"
REQUEST_TIMEOUT = 60
UPLOAD_CHUNK_SIZE = 1024 * 1024

# Catalog service types, in order of preference
_SERVICE_TYPES = {
    "compute": ("compute",),
    "image": ("image",),
    "volume": ("volumev3", "volumev2", "block-storage", "volume"),
    "network": ("network",),
}


class OpenStackGateway(ProviderGateway):
    """Gateway bound to one tenant in one region.

    Authenticates lazily on the first request with Keystone v3 password auth
    and resolves service endpoints from the returned catalog.
    """

    def __init__(
        self,
        identity_endpoint,
        username,
        password,
        tenant_name,
        region,
        domain=DEFAULT_DOMAIN,
        transport=None,
        timeout=REQUEST_TIMEOUT,
    ):
        if not username or not password:
            raise ConfigurationError("OpenStack credentials (username and password) are not set")
        if not region:
            raise ConfigurationError("Missing OpenStack region")
        self.identity_endpoint = identity_endpoint.rstrip("/")
        self.username = username
        self.password = password
        self.tenant_name = tenant_name
        self.region = region
        self.domain = domain
        self.timeout = timeout
        self._transport = transport
        self._token = None
        self._endpoints = {}

    @classmethod
    def from_descriptor(cls, descriptor):
        return cls(
            identity_endpoint=descriptor.identity_endpoint,
            username=descriptor.username,
            password=descriptor.password,
            tenant_name=descriptor.tenant_name,
            region=descriptor.region,
        )

    # ── HTTP helpers ──────────────────────────────────────────────

    def _client(self):
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    async def authenticate(self):
        """Request a project-scoped token and load the service catalog."""
        url = f"{self.identity_endpoint}/v3/auth/tokens"
        payload = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": self.username,
                            "domain": {"name": self.domain},
                            "password": self.password,
                        }
                    },
                },
                "scope": {"project": {"name": self.tenant_name, "domain": {"name": self.domain}}},
            }
        }
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"authentication request failed: {e}", stage="authenticate") from e
        if resp.status_code in (401, 403):
            raise AuthFailureError(f"Failed to authenticate the client (HTTP {resp.status_code})")
        if resp.is_error:
            raise ProviderError(f"authentication failed: HTTP {resp.status_code}", stage="authenticate")

        self._token = resp.headers.get("X-Subject-Token")
        if not self._token:
            raise AuthFailureError("Failed to authenticate the client (no token returned)")
        catalog = resp.json().get("token", {}).get("catalog", [])
        self._endpoints = _endpoints_from_catalog(catalog, self.region)
        if not self._endpoints:
            raise ConfigurationError(f"Invalid OpenStack region '{self.region}'")
        logger.info(f"Authenticated as {self.username} (project={self.tenant_name}, region={self.region}).")

    async def _endpoint(self, service):
        if self._token is None:
            await self.authenticate()
        try:
            return self._endpoints[service]
        except KeyError:
            raise ProviderError(f"no '{service}' endpoint in region '{self.region}'", stage=service) from None

    async def _request(self, service, method, path, stage, json=None, content=None, headers=None, params=None, not_found=None):
        """Make an authenticated request against *service* and return the response.

        HTTP 401/403 raise AuthFailureError, 404 raises *not_found* (or
        NotFoundError), anything else raises ProviderError tagged with *stage*.
        """
        base = await self._endpoint(service)
        url = f"{base}{path}"
        req_headers = {"X-Auth-Token": self._token, "Accept": "application/json"}
        if headers:
            req_headers.update(headers)
        logger.debug(f"{method} {url}")
        try:
            async with self._client() as client:
                resp = await client.request(method, url, json=json, content=content, params=params, headers=req_headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"{stage}: {e}", stage=stage) from e
        except OSError as e:
            # raised by a streamed request body, e.g. an unreadable image file
            raise ProviderError(f"{stage}: {e}", stage=stage) from e

        if resp.status_code in (401, 403):
            self._token = None
            raise AuthFailureError(f"{stage}: provider rejected the session (HTTP {resp.status_code})")
        if resp.status_code == 404:
            raise not_found or NotFoundError(stage)
        if resp.is_error:
            raise ProviderError(f"{stage}: HTTP {resp.status_code} {_error_message(resp)}", stage=stage)
        return resp

    # ── Flavors and images ─────────────────────────────────────────

    async def resolve_flavor(self, name):
        resp = await self._request("compute", "GET", "/flavors", "resolve_flavor")
        matches = [f["id"] for f in resp.json().get("flavors", []) if f.get("name") == name]
        if not matches:
            raise NotFoundError("flavor", name)
        if len(matches) > 1:
            raise ProviderError(f"flavor name '{name}' is ambiguous ({len(matches)} matches)", stage="resolve_flavor")
        return matches[0]

    async def find_image_by_name(self, name):
        resp = await self._request("image", "GET", "/v2/images", "find_image", params={"name": name})
        for image in resp.json().get("images", []):
            if image.get("name") == name:
                return image["id"]
        return ""

    async def upload_image(self, metadata, path):
        path = os.path.expanduser(path)
        if not os.path.isfile(path):
            raise NotFoundError("image file", path)
        body = {
            "name": metadata.name,
            "container_format": metadata.container_format,
            "disk_format": metadata.disk_format,
        }
        if metadata.min_disk:
            body["min_disk"] = metadata.min_disk
        if metadata.min_ram:
            body["min_ram"] = metadata.min_ram

        resp = await self._request("image", "POST", "/v2/images", "create_image", json=body)
        image_id = resp.json()["id"]
        logger.info(f"Image record created (id={image_id}). Uploading {path}...")

        await self._request(
            "image",
            "PUT",
            f"/v2/images/{image_id}/file",
            "upload_image",
            content=_read_chunks(path),
            headers={"Content-Type": "application/octet-stream"},
        )
        return image_id

    async def image_status(self, image_id):
        resp = await self._request("image", "GET", f"/v2/images/{image_id}", "image_status")
        return resp.json().get("status", "")

    # ── Instances ─────────────────────────────────────────────────

    async def create_instance(self, spec):
        server = {
            "name": spec.name,
            "flavorRef": spec.flavor_id,
            "imageRef": spec.image_id,
            "security_groups": [{"name": g} for g in spec.security_groups],
        }
        if spec.networks:
            server["networks"] = [{"uuid": n} for n in spec.networks]
        if spec.user_data:
            server["user_data"] = base64.b64encode(spec.user_data).decode()
        if spec.admin_password:
            server["adminPass"] = spec.admin_password

        resp = await self._request("compute", "POST", "/servers", "create_instance", json={"server": server})
        return resp.json()["server"]["id"]

    async def delete_instance(self, instance_id):
        await self._request(
            "compute", "DELETE", f"/servers/{instance_id}", "delete_instance", not_found=NotFoundError("instance", instance_id)
        )

    async def start_instance(self, instance_id):
        await self._request("compute", "POST", f"/servers/{instance_id}/action", "start_instance", json={"os-start": None})

    async def stop_instance(self, instance_id):
        await self._request("compute", "POST", f"/servers/{instance_id}/action", "stop_instance", json={"os-stop": None})

    async def _get_server(self, instance_id):
        try:
            resp = await self._request("compute", "GET", f"/servers/{instance_id}", "get_instance")
        except NotFoundError:
            return None
        return resp.json().get("server")

    async def instance_status(self, instance_id):
        server = await self._get_server(instance_id)
        return server.get("status") if server else None

    async def instance_addresses(self, instance_id, network_ids):
        server = await self._get_server(instance_id)
        if server is None:
            raise NotFoundError("instance", instance_id)
        addresses = server.get("addresses", {})

        result = []
        for network_id in network_ids:
            resp = await self._request("network", "GET", f"/v2.0/networks/{network_id}", "get_network")
            network_name = resp.json()["network"]["name"]
            for block in addresses.get(network_name, []):
                result.append({"addr": block.get("addr"), "type": block.get("OS-EXT-IPS:type"), "network": network_name})
        return result

    # ── Floating IPs ──────────────────────────────────────────────

    async def allocate_floating_ip(self, pool):
        resp = await self._request("compute", "POST", "/os-floating-ips", "allocate_floating_ip", json={"pool": pool})
        fip = resp.json()["floating_ip"]
        return FloatingIP(id=str(fip["id"]), ip=fip["ip"], pool=fip.get("pool", pool))

    async def associate_floating_ip(self, instance_id, ip):
        body = {"addFloatingIp": {"address": ip}}
        await self._request("compute", "POST", f"/servers/{instance_id}/action", "associate_floating_ip", json=body)

    async def disassociate_floating_ip(self, instance_id, ip):
        body = {"removeFloatingIp": {"address": ip}}
        await self._request("compute", "POST", f"/servers/{instance_id}/action", "disassociate_floating_ip", json=body)

    async def delete_floating_ip(self, floating_ip_id):
        await self._request("compute", "DELETE", f"/os-floating-ips/{floating_ip_id}", "delete_floating_ip")

    # ── Volumes ───────────────────────────────────────────────────

    async def create_volume(self, spec):
        volume = {"name": spec.name, "size": spec.size}
        if spec.type:
            volume["volume_type"] = spec.type
        resp = await self._request("volume", "POST", "/volumes", "create_volume", json={"volume": volume})
        return resp.json()["volume"]["id"]

    async def attach_volume(self, volume_id, instance_id, device=""):
        attachment = {"volumeId": volume_id}
        if device:
            attachment["device"] = device
        resp = await self._request(
            "compute",
            "POST",
            f"/servers/{instance_id}/os-volume_attachments",
            "attach_volume",
            json={"volumeAttachment": attachment},
        )
        return resp.json().get("volumeAttachment", {}).get("device") or device

    async def detach_volume(self, volume_id, instance_id):
        await self._request(
            "compute", "DELETE", f"/servers/{instance_id}/os-volume_attachments/{volume_id}", "detach_volume"
        )

    async def delete_volume(self, volume_id):
        await self._request("volume", "DELETE", f"/volumes/{volume_id}", "delete_volume")

    async def volume_status(self, volume_id):
        try:
            resp = await self._request("volume", "GET", f"/volumes/{volume_id}", "volume_status")
        except NotFoundError:
            return VOLUME_DELETED
        return resp.json()["volume"].get("status", "")

    async def close(self):
        self._token = None
        self._endpoints = {}


def _endpoints_from_catalog(catalog, region):
    """Pick the public endpoint of each service in *region* from a v3 catalog.

    Project-scoped endpoint URLs are used as returned; the compute URL already
    carries the project ID.
    """
    endpoints = {}
    for service, types in _SERVICE_TYPES.items():
        for service_type in types:
            url = _find_endpoint(catalog, service_type, region)
            if url:
                endpoints[service] = url.rstrip("/")
                break
    return endpoints


def _find_endpoint(catalog, service_type, region):
    for entry in catalog:
        if entry.get("type") != service_type:
            continue
        for endpoint in entry.get("endpoints", []):
            if endpoint.get("interface") != "public":
                continue
            if region in (endpoint.get("region"), endpoint.get("region_id")):
                return endpoint.get("url")
    return None


def _error_message(resp):
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        for value in body.values():
            if isinstance(value, dict) and "message" in value:
                return value["message"]
    return str(body)[:200]


async def _read_chunks(path):
    with open(path, "rb") as f:
        while chunk := await asyncio.to_thread(f.read, UPLOAD_CHUNK_SIZE):
            yield chunk
