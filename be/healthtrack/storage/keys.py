"""
Key catalogue for the local key-value store.

Every component reading or writing the flat store goes through these
patterns, so the layout of roles, grants and session flags is defined
in one place.
"""


class StoreKeys:
    """Key patterns for the local key-value store."""

    # Session flags
    IS_LOGGED_IN = "session:is_logged_in"
    CURRENT_USER_ID = "session:current_user_id"

    # Roles
    USER_ROLE = "user_role:{user_id}"

    # Healthcare access grants (ids percent-encoded by GrantTable)
    GRANT_ACTIVE = "healthcare_access:{owner_id}:{viewer_id}"
    GRANT_EXPIRY = "healthcare_access_expiry:{owner_id}:{viewer_id}"

    # Health-data consent
    CONSENT = "consent:{user_id}"
