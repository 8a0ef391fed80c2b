"""
Reverse proxy configuration for custom domains.

Renders one NGINX server block per verified domain into a single
generated file, validates it with `nginx -t` inside the NGINX container
and reloads. A config that fails validation is rolled back.
"""

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path

import docker
from docker.errors import APIError, DockerException, NotFound
from jinja2 import Environment, FileSystemLoader

from config import settings
from core.domain_store import DomainStore
from core.domain_validator import is_valid_domain
from models.domain import Domain, SSLStatus
from models.nginx import DomainServerBlock, ProxyReloadResult

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"
DOMAINS_TEMPLATE = "custom_domains.conf.j2"

_SLUG_RE = re.compile(r"[a-zA-Z0-9_-]+")


class ProxyServiceError(Exception):
    """NGINX container could not be reached or commanded."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


class NginxProxyService:
    """Regenerates the custom domain config and reloads NGINX."""

    def __init__(
        self,
        domain_store: DomainStore | None = None,
        config_path: str | None = None,
        container_name: str | None = None,
        template_dir: Path | None = None,
    ):
        self._domain_store = domain_store
        self.config_path = Path(config_path or settings.nginx_domains_conf)
        self.container_name = container_name or settings.nginx_container_name
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir or DEFAULT_TEMPLATE_DIR)),
            autoescape=False,  # NGINX configs don't need HTML escaping
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._client: docker.DockerClient | None = None

    @property
    def domain_store(self) -> DomainStore:
        if self._domain_store is None:
            self._domain_store = DomainStore()
        return self._domain_store

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ProxyServiceError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _exec_sync(self, command: list[str]) -> tuple[int, str, str]:
        try:
            container = self.client.containers.get(self.container_name)
            result = container.exec_run(cmd=command, demux=True)
        except NotFound:
            raise ProxyServiceError(
                f"Container '{self.container_name}' not found",
                error_type="container_not_found",
                suggestion="Ensure the NGINX container is running",
            )
        except APIError as e:
            raise ProxyServiceError(f"Docker API error: {e}", error_type="docker_api_error")

        stdout, stderr = result.output or (None, None)
        return result.exit_code, stdout.decode() if stdout else "", stderr.decode() if stderr else ""

    async def exec_in_container(self, command: list[str]) -> tuple[int, str, str]:
        """Run a command in the NGINX container; returns (exit_code, stdout, stderr)."""
        return await asyncio.wait_for(
            asyncio.to_thread(self._exec_sync, command), timeout=settings.nginx_operation_timeout
        )

    async def test_config(self) -> tuple[bool, str]:
        exit_code, _, stderr = await self.exec_in_container(["nginx", "-t"])
        if exit_code != 0:
            logger.warning(f"NGINX configuration test failed: {stderr}")
        return exit_code == 0, stderr

    async def reload(self) -> tuple[bool, str]:
        logger.info("Sending reload signal to NGINX")
        exit_code, _, stderr = await self.exec_in_container(["nginx", "-s", "reload"])
        if exit_code != 0:
            logger.error(f"NGINX reload failed: {stderr}")
        return exit_code == 0, stderr

    def build_server_blocks(self, domains: list[Domain]) -> list[DomainServerBlock]:
        """Template context for every domain that can be served."""
        blocks = []
        for domain in domains:
            if not domain.verified or not domain.site_slug:
                continue
            if not is_valid_domain(domain.domain) or not _SLUG_RE.fullmatch(domain.site_slug):
                logger.warning(f"Skipping unsafe domain entry {domain.domain!r} ({domain.id})")
                continue

            ssl_enabled = bool(
                domain.ssl_status == SSLStatus.ACTIVE and domain.ssl_cert_path and domain.ssl_key_path
            )
            blocks.append(
                DomainServerBlock(
                    domain=domain.domain,
                    site_slug=domain.site_slug,
                    ssl_enabled=ssl_enabled,
                    ssl_cert_path=domain.ssl_cert_path if ssl_enabled else None,
                    ssl_key_path=domain.ssl_key_path if ssl_enabled else None,
                )
            )
        return blocks

    def render(self, blocks: list[DomainServerBlock]) -> str:
        template = self.env.get_template(DOMAINS_TEMPLATE)
        return template.render(
            domains=blocks,
            site_root=settings.nginx_site_root.rstrip("/"),
            acme_webroot=settings.acme_webroot,
            generated_at=datetime.utcnow().isoformat(),
        )

    async def regenerate_and_reload(self) -> ProxyReloadResult:
        """
        Write the config for all verified domains, validate and reload.

        Never raises; failures are reported in the result.
        """
        previous: str | None = None
        try:
            blocks = self.build_server_blocks(await self.domain_store.list_verified())
            content = self.render(blocks)

            if self.config_path.exists():
                previous = await asyncio.to_thread(self.config_path.read_text)
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(self.config_path.write_text, content)

            valid, stderr = await self.test_config()
            if not valid:
                await self._restore(previous)
                return ProxyReloadResult(
                    success=False,
                    domains_configured=len(blocks),
                    config_path=str(self.config_path),
                    error=f"Nginx config test failed: {stderr}",
                )

            reloaded, stderr = await self.reload()
            if not reloaded:
                return ProxyReloadResult(
                    success=False,
                    domains_configured=len(blocks),
                    config_path=str(self.config_path),
                    error=f"Nginx reload failed: {stderr}",
                )

            logger.info(f"NGINX reloaded with {len(blocks)} custom domain(s)")
            return ProxyReloadResult(success=True, domains_configured=len(blocks), config_path=str(self.config_path))

        except ProxyServiceError as e:
            logger.error(f"Proxy update failed: {e.message}")
            return ProxyReloadResult(success=False, config_path=str(self.config_path), error=e.message)
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"Proxy update failed: {e}")
            return ProxyReloadResult(success=False, config_path=str(self.config_path), error=str(e) or "timeout")

    async def _restore(self, previous: str | None) -> None:
        try:
            if previous is None:
                await asyncio.to_thread(self.config_path.unlink, True)
            else:
                await asyncio.to_thread(self.config_path.write_text, previous)
            logger.info(f"Restored previous NGINX config at {self.config_path}")
        except OSError as e:
            logger.error(f"Failed to restore NGINX config: {e}")


# Singleton instance
_proxy_service: NginxProxyService | None = None


def get_proxy_service() -> NginxProxyService:
    """Get the global proxy service instance."""
    global _proxy_service
    if _proxy_service is None:
        _proxy_service = NginxProxyService()
    return _proxy_service
