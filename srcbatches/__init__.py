"""Repository resolution, workspace planning, git and Docker workspaces, and progress summaries for batch code changes."""

__version__ = "0.1.0"