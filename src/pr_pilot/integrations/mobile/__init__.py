from .build_info import IOSBuildInfo, get_ios_build_info, has_ios_changes, ios_paths

__all__ = ["IOSBuildInfo", "get_ios_build_info", "has_ios_changes", "ios_paths"]
