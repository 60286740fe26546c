"""
HTTP routes: the GraphQL endpoint and a health probe.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from ridebook.dependencies import RequestContext, get_request_context
from ridebook.schema import execute
from ridebook.schemas import GraphQLRequest, GraphQLResponse, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/graphql", response_model=GraphQLResponse, response_model_exclude_unset=True)
async def graphql_endpoint(
    payload: GraphQLRequest,
    request: Request,
    context: RequestContext = Depends(get_request_context),
):
    result = await execute(
        request.app.state.graphql_schema,
        context,
        payload.query,
        payload.variables,
        payload.operation_name,
    )
    return GraphQLResponse(**result)


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")
