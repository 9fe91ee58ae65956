import time

import aiohttp

from indexer.main.config import get_settings
from indexer.main.exceptions import NotReadyException
from indexer.main.logging import get_logger

logger = get_logger(__name__)

SLOW_DNS_THRESHOLD_MS = 2000


class AioHttpClient:
    session: aiohttp.ClientSession = None

    def _create_trace_config(self) -> aiohttp.TraceConfig:
        """Warn when resolving the metadata provider host is slow."""
        trace = aiohttp.TraceConfig()

        async def on_dns_start(session, trace_config_ctx, params):
            trace_config_ctx._dns_start_time = time.perf_counter()

        async def on_dns_end(session, trace_config_ctx, params):
            if not hasattr(trace_config_ctx, "_dns_start_time"):
                return

            dns_duration_ms = (time.perf_counter() - trace_config_ctx._dns_start_time) * 1000
            if dns_duration_ms > SLOW_DNS_THRESHOLD_MS:
                logger.warning(
                    f"SLOW DNS resolution detected for {params.host}",
                    extra={
                        "event": "dns_slow",
                        "host": params.host,
                        "duration_ms": int(dns_duration_ms),
                        "threshold_ms": SLOW_DNS_THRESHOLD_MS,
                    },
                )

        trace.on_dns_resolvehost_start.append(on_dns_start)
        trace.on_dns_resolvehost_end.append(on_dns_end)

        return trace

    def start(self):
        settings = get_settings()

        # Provider pages can be slow to assemble; per-request timeouts may override
        timeout = aiohttp.ClientTimeout(
            total=float(settings.metadata_api_timeout_seconds),
            connect=10.0,
        )

        connector = aiohttp.TCPConnector(
            limit=100,
            limit_per_host=30,
            enable_cleanup_closed=True,
            use_dns_cache=True,
            ttl_dns_cache=300,
        )

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            trace_configs=[self._create_trace_config()],
        )

    async def stop(self):
        if self.session is None:
            return
        await self.session.close()
        self.session = None

    def __call__(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise NotReadyException("aiohttp client is not started!")
        return self.session


aiohttp_client = AioHttpClient()
