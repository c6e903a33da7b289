"""CRM backend — multi-tenant GraphQL API.

Organisations, team members and invitations behind JWT session auth.
Every record is scoped to the caller's organisation.
"""

__version__ = "0.1.0"
