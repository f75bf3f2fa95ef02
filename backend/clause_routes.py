"""
AGREEMENT CLAUSE API ROUTES

- List / get clauses (ordered by sequence)
- Create with the next unused sequence number
- Update title/text/point number/status
- Reorder: {direction: up|down} or {newSequenceNo}
"""

from fastapi import APIRouter, Depends, Query, status
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional
import logging

from auth import RequestContext, get_current_user
from database import get_client, get_database
from models import ApiResponse, ClauseCreate, ClauseUpdate, ClauseReorder
from core.billing_errors import http_errors
from core.clause_service import ClauseService
from core.documents import serialize_doc

logger = logging.getLogger(__name__)

clause_router = APIRouter(prefix="/api/v1", tags=["Agreement Clauses"])


async def get_clause_service(
    client: AsyncIOMotorClient = Depends(get_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> ClauseService:
    return ClauseService(client, db)


@clause_router.get("/agreement-clauses", response_model=ApiResponse)
async def list_clauses(
    agreement_id: Optional[str] = Query(default=None, alias="agreementId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = None,
    service: ClauseService = Depends(get_clause_service),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("List clauses"):
        clauses = await service.list_clauses(agreement_id, status_filter, search)
    return ApiResponse(data=[serialize_doc(c) for c in clauses])


@clause_router.get("/agreement-clauses/{clause_id}", response_model=ApiResponse)
async def get_clause(
    clause_id: str,
    service: ClauseService = Depends(get_clause_service),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("Get clause"):
        clause = await service.get_clause(clause_id)
    return ApiResponse(data=serialize_doc(clause))


@clause_router.post("/agreement-clauses", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_clause(
    request: ClauseCreate,
    service: ClauseService = Depends(get_clause_service),
    ctx: RequestContext = Depends(get_current_user)
):
    """Create a clause. Duplicate point numbers in one agreement are rejected."""
    with http_errors("Create clause"):
        clause = await service.create_clause(ctx, request.model_dump())
    return ApiResponse(data=serialize_doc(clause), message="Clause created")


@clause_router.put("/agreement-clauses/{clause_id}", response_model=ApiResponse)
async def update_clause(
    clause_id: str,
    request: ClauseUpdate,
    service: ClauseService = Depends(get_clause_service),
    ctx: RequestContext = Depends(get_current_user)
):
    changes = request.model_dump(exclude={"expected_version"}, exclude_none=True)
    with http_errors("Update clause"):
        clause = await service.update_clause(ctx, clause_id, changes, request.expected_version)
    return ApiResponse(data=serialize_doc(clause), message="Clause updated")


@clause_router.patch("/agreement-clauses/{clause_id}/reorder", response_model=ApiResponse)
async def reorder_clause(
    clause_id: str,
    request: ClauseReorder,
    service: ClauseService = Depends(get_clause_service),
    ctx: RequestContext = Depends(get_current_user)
):
    """
    Move a clause one step (direction) or to an explicit sequence number.
    Both rows of a swap are written in one transaction.
    """
    with http_errors("Reorder clause"):
        clauses = await service.reorder(ctx, clause_id, request.direction, request.new_sequence_no)
    return ApiResponse(data=[serialize_doc(c) for c in clauses], message="Clause reordered")
