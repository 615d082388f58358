"""
Workflows package - Sample workflow definitions.
"""

from contentflow.workflows.linkedin_post import (
    create_linkedin_post_workflow,
    register_linkedin_post_workflow,
)

__all__ = [
    "create_linkedin_post_workflow",
    "register_linkedin_post_workflow",
]
