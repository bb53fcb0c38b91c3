from flowdesk.version_control.github import VersionControl, api_secret_name

__all__ = ["VersionControl", "api_secret_name"]
