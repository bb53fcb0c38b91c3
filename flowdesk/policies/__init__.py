"""Project-role authorization checks."""

from flowdesk.policies.permissions import authorize, can, can_edit_credential

__all__ = ["authorize", "can", "can_edit_credential"]
