"""Admin action endpoint.

POST /api/orders/actions dispatches retry, abort, cancel and status-check
actions. Failures are returned as ``{success: false, error}`` with the
status code mapped from the domain exception.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from giftflow.api.dependencies import get_fulfillment_client
from giftflow.api.schemas import OrderActionRequest
from giftflow.db.connection import get_db
from giftflow.errors import ConflictError, NotFoundError, ValidationError
from giftflow.services.errors import FulfillmentProviderError
from giftflow.services.fulfillment_client import FulfillmentClient
from giftflow.services.order_actions import OrderActions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_actions(
    db: Session = Depends(get_db),
    fulfillment: FulfillmentClient = Depends(get_fulfillment_client),
) -> OrderActions:
    """Dependency to get OrderActions instance."""
    return OrderActions(db, fulfillment)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/actions")
async def perform_order_action(
    request: OrderActionRequest,
    actions: OrderActions = Depends(get_order_actions),
) -> JSONResponse:
    """Run an admin action against one order.

    Returns:
        The action's result dict (200), or an error body with 400, 404,
        409 or 500.
    """
    try:
        result = await actions.perform(
            request.action, request.order_id, request.cancellation_reason
        )
    except NotFoundError as e:
        return _error(404, str(e))
    except ConflictError as e:
        return _error(409, str(e))
    except ValidationError as e:
        return _error(400, str(e))
    except FulfillmentProviderError as e:
        return _error(500, f"Fulfillment provider error: {e}")
    except Exception as e:
        logger.exception("Order action %s failed for %s", request.action, request.order_id)
        return _error(500, str(e))
    return JSONResponse(status_code=200, content=result)
