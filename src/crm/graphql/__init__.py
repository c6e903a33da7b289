"""GraphQL API — strawberry schema mounted on FastAPI at /graphql."""

from strawberry.fastapi import GraphQLRouter

from crm.graphql.context import get_context
from crm.graphql.schema import schema

GRAPHQL_PATH = "/graphql"


def create_graphql_router() -> GraphQLRouter:
    return GraphQLRouter(schema, path=GRAPHQL_PATH, context_getter=get_context)
