"""Tests for iOS change detection."""

import pytest

from pr_pilot.integrations.mobile import get_ios_build_info, has_ios_changes, ios_paths


class TestIOSChanges:
    @pytest.mark.parametrize("path", [
        "ios-app/Sources/App.swift",
        "ios/Podfile",
        "Shared/Model.swift",
        "App.xcodeproj/project.pbxproj",
        "App/Info.plist",
        "Package.swift",
        "Podfile.lock",
    ])
    def test_ios_paths_detected(self, path):
        assert has_ios_changes([path])

    @pytest.mark.parametrize("path", ["web/src/app.tsx", "README.md", "android/app/build.gradle", "docs/swift-notes.md"])
    def test_other_paths_ignored(self, path):
        assert not has_ios_changes([path])

    def test_ios_paths_filters(self):
        assert ios_paths(["web/a.ts", "ios/App.swift", "b.py"]) == ["ios/App.swift"]


class TestBuildInfo:
    def test_repo_link_wins(self):
        info = get_ios_build_info("https://testflight.apple.com/join/REPO", "https://testflight.apple.com/join/WORKER")
        assert info.public_link.endswith("REPO")
        assert info.available
        assert "TestFlight build will be available at https://testflight.apple.com/join/REPO" in info.comment

    def test_worker_link_fallback(self):
        assert get_ios_build_info(None, "https://tf/w").public_link == "https://tf/w"

    def test_no_link(self):
        info = get_ios_build_info(None, None)
        assert not info.available
        assert "submit a TestFlight build manually" in info.comment
