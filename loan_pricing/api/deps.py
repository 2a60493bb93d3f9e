"""
Service wiring and request dependencies
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..async_storage import AsyncStorageInterface, create_async_storage
from ..audit import AuditTrail, UserContext
from ..clock import Clock, SystemClock
from ..config import LoanPricingConfig, get_config
from ..currency import FxResolver
from ..exceptions import LoanPricingError, LockedLoanError, NotFoundError
from ..fees import FeeConfigRegistry
from ..service import LoanManager
from ..snapshots import SnapshotManager


class PricingSystem:
    """Loan pricing services wired to one storage backend and clock"""

    def __init__(
        self,
        storage: Optional[AsyncStorageInterface] = None,
        clock: Optional[Clock] = None,
        config: Optional[LoanPricingConfig] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.storage = storage or create_async_storage(self.config)

        self.audit_trail = AuditTrail(self.storage, self.clock)
        self.fx_resolver = FxResolver(self.storage, self.clock)
        self.fee_registry = FeeConfigRegistry(self.storage, self.clock)
        self.loan_manager = LoanManager(
            self.storage, self.fx_resolver, self.fee_registry,
            self.audit_trail, self.clock, self.config
        )
        self.snapshot_manager = SnapshotManager(
            self.storage, self.clock, self.config, self.audit_trail
        )

    async def close(self) -> None:
        await self.storage.close()


def get_system(request: Request) -> PricingSystem:
    return request.app.state.system


def get_user_context(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None)
) -> UserContext:
    """Caller identity for mutations, from the X-User-Id / X-User-Name headers"""
    if not x_user_id or not x_user_name:
        raise HTTPException(status_code=400, detail="X-User-Id and X-User-Name headers are required")
    return UserContext(user_id=x_user_id, user_name=x_user_name)


def http_error(error: LoanPricingError) -> HTTPException:
    """Map a domain error to its HTTP status"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, LockedLoanError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
