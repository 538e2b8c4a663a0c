"""iOS change detection and TestFlight build info."""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ...core import comments

logger = logging.getLogger(__name__)

IOS_PATH_PATTERNS = [
    re.compile(p)
    for p in (
        r"^ios-app/",
        r"^ios/",
        r"\.swift$",
        r"\.xcodeproj/",
        r"\.xcworkspace/",
        r"\.xcdatamodeld/",
        r"\.storyboard$",
        r"\.xib$",
        r"Info\.plist$",
        r"\.entitlements$",
        r"Podfile(\.lock)?$",
        r"Package\.swift$",
    )
]


def ios_paths(paths: Iterable[str]) -> List[str]:
    return [p for p in paths if any(rx.search(p) for rx in IOS_PATH_PATTERNS)]


def has_ios_changes(paths: Iterable[str]) -> bool:
    matched = ios_paths(paths)
    if matched:
        logger.info(f"📱 Found {len(matched)} iOS file(s) changed: {', '.join(matched[:5])}")
    return bool(matched)


@dataclass
class IOSBuildInfo:
    """Where testers pick up the build that the merge kicks off."""

    public_link: Optional[str]

    @property
    def available(self) -> bool:
        return bool(self.public_link)

    @property
    def comment(self) -> str:
        return comments.ios_build(self.public_link)


def get_ios_build_info(repo_link: Optional[str], worker_link: Optional[str]) -> IOSBuildInfo:
    """Repository-configured TestFlight link wins over the worker-wide one."""
    return IOSBuildInfo(public_link=repo_link or worker_link)
