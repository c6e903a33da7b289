"""Authentication and authorization.

Users log in with email/password and receive a session JWT. Every
request presents it as a Bearer token; the auth middleware turns it into
a typed Identity that resolvers read from the GraphQL context.

Invitation tokens are a second, separately-typed JWT that lets an
invited person claim a TeamMember slot without being logged in.
"""
