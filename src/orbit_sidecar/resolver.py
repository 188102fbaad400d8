from __future__ import annotations

import logging

from .errors import ArtifactHostError, AssetNotFound, ReleaseNotFound, ResolutionError, UnsupportedPlatform
from .github import ArtifactHost
from .models import LATEST, Arch, AssetLayout, AssetRef, Component, Platform, ReleaseDescriptor

logger = logging.getLogger(__name__)

ASSET_NAME_TEMPLATE = "{component}-{tag}-{platform}-{arch}.tar.gz"


def check_platform(platform: str, arch: str) -> tuple[Platform, Arch]:
    """Validate a (platform, arch) pair against the supported allow-lists.

    Raises:
        UnsupportedPlatform: If either value is outside its allow-list.
    """
    try:
        resolved_platform = Platform(platform)
    except ValueError:
        raise UnsupportedPlatform("Platform", platform, [item.value for item in Platform]) from None
    try:
        resolved_arch = Arch(arch)
    except ValueError:
        raise UnsupportedPlatform("Architecture", arch, [item.value for item in Arch]) from None
    return resolved_platform, resolved_arch


def expected_asset_names(tag: str, platform: Platform, arch: Arch, layout: AssetLayout) -> dict[Component, str]:
    return {
        component: ASSET_NAME_TEMPLATE.format(
            component=component.value,
            tag=tag,
            platform=platform.value,
            arch=arch.value,
        )
        for component in layout.components
    }


class ArtifactResolver:
    """Turns a version selector into the exact release assets for this host."""

    def __init__(self, index: ArtifactHost, *, layout: AssetLayout = AssetLayout.SPLIT) -> None:
        self.index = index
        self.layout = layout

    def resolve(self, version_selector: str, platform: str, arch: str) -> ReleaseDescriptor:
        resolved_platform, resolved_arch = check_platform(platform, arch)

        tag = version_selector.strip()
        try:
            if tag == LATEST:
                tag = self.index.latest_tag()
            release = self.index.release_by_tag(tag)
        except ArtifactHostError as exc:
            raise ResolutionError(f"Unable to query releases: {exc}") from exc
        if release is None:
            raise ReleaseNotFound(tag)

        expected = expected_asset_names(release.tag_name, resolved_platform, resolved_arch, self.layout)
        logger.debug("Looking for assets: %s", ", ".join(expected.values()))

        assets: list[AssetRef] = []
        for component, name in expected.items():
            payload = release.find_asset(name)
            if payload is None:
                raise AssetNotFound(name, release.tag_name)
            assets.append(
                AssetRef(
                    name=payload.name,
                    remote_id=payload.id,
                    download_locator=payload.url,
                    size=payload.size,
                )
            )
            logger.debug("Resolved %s asset %s (id %d)", component.value, payload.name, payload.id)

        return ReleaseDescriptor(
            tag=release.tag_name,
            platform=resolved_platform,
            arch=resolved_arch,
            layout=self.layout,
            assets=tuple(assets),
        )
