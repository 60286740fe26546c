"""
GraphQL schema and resolver map.

The schema is built from SDL and every Query/Mutation field is bound to a
handler from a flat name -> resolver map. Records handed back to GraphQL are
plain dicts; ``Lazy`` values inside them are resolved only when selected.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from graphql import (
    GraphQLError,
    GraphQLResolveInfo,
    GraphQLSchema,
    build_schema,
    default_field_resolver,
    graphql,
)

from ridebook.dependencies import RequestContext
from ridebook.errors import RidebookError
from ridebook.lazy import Lazy
from ridebook.ledger import Transfer

logger = logging.getLogger(__name__)

SDL = """
enum TransferState {
  pending
  confirmed
  complete
  canceled
  terminated
}

enum RevenueStateFilter {
  pending
  confirmed
  complete
  canceled
  terminated
  completeOrConfirmed
}

type ProjectRole {
  key: String!
  displayName: String
}

type UserGrant {
  organizationId: String
  creationDate: String
  changeDate: String
  projectId: String
  projectName: String
  state: String
  roles: [ProjectRole!]!
}

type UserRoute {
  start: String
  end: String
  price: Float
  vehicle: String
}

type UserProfile {
  firstName: String
  lastName: String
  displayName: String
  preferredLanguage: String
}

type UserEmail {
  email: String
}

type HumanUser {
  profile: UserProfile
  email: UserEmail
}

type User {
  id: ID!
  userName: String
  state: String
  loginNames: [String!]
  preferredLoginName: String
  human: HumanUser
  avatarUrl: String
  grants: [UserGrant!]!
  roles: [ProjectRole!]!
  revenue: Float
  transferCount: Float
  monthlyRevenue: Float
  monthlyCount: Float
  routes: [UserRoute!]
}

type Transfer {
  transferId: ID!
  customerId: ID!
  customerName: String
  rideDateISO: String!
  rideTime: String!
  pickup: String!
  dropoff: String!
  roomOrName: String
  vehicle: String
  amountEUR: Float
  payment: String
  driverId: ID
  driverName: String
  state: TransferState!
  requestedAtISO: String!
}

type DriverRevenue {
  driverUserId: ID!
  currency: String!
  total: Float!
  count: Int!
}

type PushSettings {
  subject: String!
  enabled: Boolean!
}

input MirroredTransferInput {
  transferId: ID!
  rideDateISO: String!
  rideTime: String!
  pickup: String!
  dropoff: String!
  roomOrName: String
  vehicle: String
  amountEUR: Float
  payment: String
  customerId: ID!
  customerName: String
  driverId: ID
  driverName: String
  state: TransferState
  requestedAtISO: String
}

type Query {
  user(userId: ID!, organizationId: String): User!
  getIsUnique(loginName: String!): Boolean!
  getUserCount: Int!
  getAllUser(limit: Int = 100, organizationId: String): [User!]!
  getUsersByRole(roleKey: String!, limit: Int = 100, organizationId: String): [User!]!
  getProjectRoles(projectId: String!, limit: Int = 100, organizationId: String): [ProjectRole!]!

  getTransfer(transferId: ID!): Transfer
  getAllTransfers(
    customerId: ID
    driverId: ID
    state: TransferState
    fromDateISO: String
    toDateISO: String
  ): [Transfer!]!
  getCustomerBookings: [Transfer!]!
  getDriverTransfers(
    driverUserId: ID!
    state: TransferState
    fromDateISO: String
    toDateISO: String
  ): [Transfer!]!
  getDriverRevenue(
    driverUserId: ID!
    state: RevenueStateFilter
    fromDateISO: String
    toDateISO: String
    includeVouchers: Boolean = false
  ): DriverRevenue!

  getMirroredTransfer(transferId: ID!): Transfer
  getMirroredTransfers(
    state: TransferState
    customerId: ID
    driverId: ID
    fromDateISO: String
    toDateISO: String
    take: Int
    skip: Int
  ): [Transfer!]!

  pushSettings: PushSettings!
}

type Mutation {
  createTransfer(
    customerId: ID!
    rideDateISO: String!
    rideTime: String!
    pickup: String!
    dropoff: String!
    roomOrName: String
    vehicle: String
    amountEUR: Float
    payment: String
  ): Transfer!
  bookTransfer(
    rideDateISO: String!
    rideTime: String!
    pickup: String!
    dropoff: String!
    roomOrName: String
    vehicle: String
    amountEUR: Float
    payment: String
  ): Transfer!
  assignDriver(transferId: ID!, driverUserId: ID!): Transfer!
  markConfirmed(transferId: ID!): Transfer!
  cancelTransfer(transferId: ID!): Transfer!
  terminateTransfer(transferId: ID!): Transfer!
  markCompleted(transferId: ID!): Transfer!
  syncMonthlyTransfers(userId: ID!, yyyymm: String!): Int!
  createMirroredTransfer(input: MirroredTransferInput!): Transfer!
}
"""


def _ctx(info: GraphQLResolveInfo) -> RequestContext:
    return info.context


def _record(transfer: Optional[Transfer]) -> Optional[dict]:
    return transfer.as_dict() if transfer else None


def _records(transfers: List[Transfer]) -> List[dict]:
    return [t.as_dict() for t in transfers]


# ---------- users ----------


async def resolve_user(_, info, userId, organizationId=None):
    return await _ctx(info).identity.get_user(userId, organizationId)


async def resolve_is_unique(_, info, loginName):
    return await _ctx(info).identity.is_unique(loginName)


async def resolve_user_count(_, info):
    return await _ctx(info).identity.user_count()


async def resolve_all_users(_, info, limit=100, organizationId=None):
    return await _ctx(info).identity.list_users(limit, organizationId)


async def resolve_users_by_role(_, info, roleKey, limit=100, organizationId=None):
    return await _ctx(info).identity.users_by_role(roleKey, limit, organizationId)


async def resolve_project_roles(_, info, projectId, limit=100, organizationId=None):
    return await _ctx(info).identity.list_project_roles(projectId, limit, organizationId)


# ---------- transfers (read) ----------


async def resolve_get_transfer(_, info, transferId):
    return _record(await _ctx(info).transfers.get_transfer(transferId))


async def resolve_all_transfers(
    _, info, customerId=None, driverId=None, state=None, fromDateISO=None, toDateISO=None
):
    return _records(
        await _ctx(info).transfers.list_transfers(
            customer_id=customerId,
            driver_id=driverId,
            state=state,
            from_date_iso=fromDateISO,
            to_date_iso=toDateISO,
        )
    )


async def resolve_customer_bookings(_, info):
    return _records(await _ctx(info).transfers.customer_bookings())


async def resolve_driver_transfers(
    _, info, driverUserId, state=None, fromDateISO=None, toDateISO=None
):
    return _records(
        await _ctx(info).transfers.driver_transfers(
            driverUserId, state=state, from_date_iso=fromDateISO, to_date_iso=toDateISO
        )
    )


def resolve_driver_revenue(
    _, info, driverUserId, state=None, fromDateISO=None, toDateISO=None, includeVouchers=False
):
    return _ctx(info).transfers.driver_revenue(
        driverUserId,
        state=state,
        from_date_iso=fromDateISO,
        to_date_iso=toDateISO,
        include_vouchers=bool(includeVouchers),
    )


async def resolve_mirrored_transfer(_, info, transferId):
    return _record(await _ctx(info).transfers.get_mirrored_transfer(transferId))


async def resolve_mirrored_transfers(
    _,
    info,
    state=None,
    customerId=None,
    driverId=None,
    fromDateISO=None,
    toDateISO=None,
    take=None,
    skip=None,
):
    return _records(
        await _ctx(info).transfers.list_mirrored_transfers(
            state=state,
            customer_id=customerId,
            driver_id=driverId,
            from_date_iso=fromDateISO,
            to_date_iso=toDateISO,
            take=take,
            skip=skip,
        )
    )


def resolve_push_settings(_, info):
    settings = _ctx(info).settings
    return {"subject": settings.vapid_subject, "enabled": bool(settings.vapid_private_key)}


# ---------- transfers (write) ----------


async def resolve_create_transfer(
    _,
    info,
    customerId,
    rideDateISO,
    rideTime,
    pickup,
    dropoff,
    roomOrName=None,
    vehicle=None,
    amountEUR=None,
    payment=None,
):
    return _record(
        await _ctx(info).transfers.create_transfer(
            customerId, rideDateISO, rideTime, pickup, dropoff, roomOrName, vehicle, amountEUR, payment
        )
    )


async def resolve_book_transfer(
    _,
    info,
    rideDateISO,
    rideTime,
    pickup,
    dropoff,
    roomOrName=None,
    vehicle=None,
    amountEUR=None,
    payment=None,
):
    return _record(
        await _ctx(info).transfers.book_transfer(
            rideDateISO, rideTime, pickup, dropoff, roomOrName, vehicle, amountEUR, payment
        )
    )


async def resolve_assign_driver(_, info, transferId, driverUserId):
    return _record(await _ctx(info).transfers.assign_driver(transferId, driverUserId))


async def resolve_mark_confirmed(_, info, transferId):
    return _record(await _ctx(info).transfers.mark_confirmed(transferId))


async def resolve_cancel_transfer(_, info, transferId):
    return _record(await _ctx(info).transfers.cancel_transfer(transferId))


async def resolve_terminate_transfer(_, info, transferId):
    return _record(await _ctx(info).transfers.terminate_transfer(transferId))


async def resolve_mark_completed(_, info, transferId):
    return _record(await _ctx(info).transfers.mark_completed(transferId))


async def resolve_sync_monthly(_, info, userId, yyyymm):
    return await _ctx(info).transfers.sync_monthly_sheet(userId, yyyymm)


async def resolve_create_mirrored(_, info, input):
    return _record(await _ctx(info).transfers.create_mirrored_transfer(input))


RESOLVERS: Dict[str, Dict[str, Any]] = {
    "Query": {
        "user": resolve_user,
        "getIsUnique": resolve_is_unique,
        "getUserCount": resolve_user_count,
        "getAllUser": resolve_all_users,
        "getUsersByRole": resolve_users_by_role,
        "getProjectRoles": resolve_project_roles,
        "getTransfer": resolve_get_transfer,
        "getAllTransfers": resolve_all_transfers,
        "getCustomerBookings": resolve_customer_bookings,
        "getDriverTransfers": resolve_driver_transfers,
        "getDriverRevenue": resolve_driver_revenue,
        "getMirroredTransfer": resolve_mirrored_transfer,
        "getMirroredTransfers": resolve_mirrored_transfers,
        "pushSettings": resolve_push_settings,
    },
    "Mutation": {
        "createTransfer": resolve_create_transfer,
        "bookTransfer": resolve_book_transfer,
        "assignDriver": resolve_assign_driver,
        "markConfirmed": resolve_mark_confirmed,
        "cancelTransfer": resolve_cancel_transfer,
        "terminateTransfer": resolve_terminate_transfer,
        "markCompleted": resolve_mark_completed,
        "syncMonthlyTransfers": resolve_sync_monthly,
        "createMirroredTransfer": resolve_create_mirrored,
    },
}


def build_graphql_schema() -> GraphQLSchema:
    schema = build_schema(SDL)
    for type_name, fields in RESOLVERS.items():
        graphql_type = schema.get_type(type_name)
        for field_name, resolver in fields.items():
            graphql_type.fields[field_name].resolve = resolver
    return schema


def lazy_field_resolver(source, info, **args):
    value = default_field_resolver(source, info, **args)
    if isinstance(value, Lazy):
        return value.get()
    return value


def format_error(error: GraphQLError) -> dict:
    formatted = error.formatted
    original = error.original_error
    if original is None:
        code = "GRAPHQL_VALIDATION_FAILED"
    elif isinstance(original, RidebookError):
        code = original.code
        logger.warning("GraphQL field %s failed: %s", error.path, original)
    else:
        code = RidebookError.code
        logger.error("GraphQL field %s crashed", error.path, exc_info=original)
    extensions = dict(formatted.get("extensions") or {})
    extensions["code"] = code
    formatted["extensions"] = extensions
    return formatted


async def execute(
    schema: GraphQLSchema,
    context: RequestContext,
    query: str,
    variables: Optional[dict] = None,
    operation_name: Optional[str] = None,
) -> dict:
    result = await graphql(
        schema,
        query,
        context_value=context,
        variable_values=variables,
        operation_name=operation_name,
        field_resolver=lazy_field_resolver,
    )
    response: Dict[str, Any] = {"data": result.data}
    if result.errors:
        response["errors"] = [format_error(e) for e in result.errors]
    return response
