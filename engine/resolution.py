"""Classify a URL, run its platform's resolver chain and normalize the result."""

from __future__ import annotations

import logging

from config.settings import DOWNLOADER_API_ENABLED
from engine.errors import UnsupportedPlatform
from engine.formats import SelectionPolicy, normalize
from engine.resolver_chain import ResolverChain, RetryPolicy
from engine.resolvers import DownloaderApiResolver, YtDlpResolver
from input.platform_router import SUPPORTED_PLATFORMS, Platform, classify_reference

logger = logging.getLogger(__name__)


class ResolverRegistry:
    def __init__(self, chains=None):
        self._chains = dict(chains or {})

    def register(self, platform: Platform, chain: ResolverChain) -> None:
        self._chains[platform] = chain

    def chain_for(self, platform: Platform) -> ResolverChain:
        chain = self._chains.get(platform)
        if chain is None:
            raise UnsupportedPlatform(
                f"No resolvers configured for {platform.value}",
                details={"supportedPlatforms": SUPPORTED_PLATFORMS},
            )
        return chain

    def platforms(self):
        return sorted(platform.value for platform in self._chains)

    def describe(self):
        return {
            platform.value: [resolver.name for resolver in chain.resolvers]
            for platform, chain in self._chains.items()
        }


def default_registry(policy: RetryPolicy | None = None) -> ResolverRegistry:
    registry = ResolverRegistry()
    ytdlp = YtDlpResolver()
    for platform in Platform:
        resolvers = [ytdlp]
        if platform is Platform.YOUTUBE and DOWNLOADER_API_ENABLED:
            resolvers.append(DownloaderApiResolver())
        registry.register(platform, ResolverChain(resolvers, policy=policy))
    return registry


class ResolutionService:
    def __init__(self, registry: ResolverRegistry | None = None, selection_policy: SelectionPolicy | None = None):
        self.registry = registry or default_registry()
        self.selection_policy = selection_policy or SelectionPolicy()

    async def resolve(self, raw_url):
        """Return ``(MediaReference, FormatSet)`` for ``raw_url``."""
        reference = classify_reference(raw_url)
        logger.info(
            f"Resolving url={reference.url} platform={reference.platform.value} "
            f"short_form={reference.is_short_form}"
        )
        payload = await self.registry.chain_for(reference.platform).resolve(reference)
        format_set = normalize(payload, reference.is_short_form, self.selection_policy)
        return reference, format_set
