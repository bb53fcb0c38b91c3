from flowdesk.projects.export import build_tree, export_project_yaml
from flowdesk.projects.manager import ProjectManager

__all__ = ["ProjectManager", "build_tree", "export_project_yaml"]
