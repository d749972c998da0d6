"""Domain exceptions for the settlement engine.

These exceptions are framework-agnostic and represent business rule violations.
Every error belongs to one of four families (validation, not-found, forbidden,
conflict) and carries an ``http_status`` hint so a transport layer can map it
without knowing the domain.
"""


class SettlementError(Exception):
    """Base exception for all domain errors."""

    http_status: int = 400

    def __init__(self, message: str, code: str = "SETTLEMENT_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Taxonomy ---


class ValidationError(SettlementError):
    """Malformed input, e.g. budget_min > budget_max or mismatched milestone sums."""

    http_status = 422

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class NotFoundError(SettlementError):
    """A referenced entity does not exist."""

    http_status = 404

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code)


class ForbiddenError(SettlementError):
    """The acting user lacks ownership or role for the action."""

    http_status = 403

    def __init__(self, message: str, code: str = "FORBIDDEN") -> None:
        super().__init__(message=message, code=code)


class ConflictError(SettlementError):
    """A state-machine precondition was violated or a concurrent caller won."""

    http_status = 409

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(message=message, code=code)


# --- Validation Errors ---


class BudgetRangeError(ValidationError):
    def __init__(self, budget_min: object, budget_max: object) -> None:
        super().__init__(
            message=f"budget_min ({budget_min}) must not exceed budget_max ({budget_max})",
            code="INVALID_BUDGET_RANGE",
        )


class InvalidAmountError(ValidationError):
    """Raised for negative prices or non-positive escrow/milestone amounts."""

    def __init__(self, field: str, amount: object) -> None:
        super().__init__(
            message=f"Invalid {field}: {amount}",
            code="INVALID_AMOUNT",
        )
        self.field = field


class MilestoneAmountError(ValidationError):
    """Raised when milestone amounts do not partition the escrow total."""

    def __init__(self, total: object, milestone_sum: object) -> None:
        super().__init__(
            message=(
                f"Milestone amounts sum to {milestone_sum}, "
                f"expected escrow total {total}"
            ),
            code="MILESTONE_SUM_MISMATCH",
        )


# --- Not Found Errors ---


class BuyerRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str) -> None:
        super().__init__(
            message=f"Buyer request not found: {request_id}",
            code="BUYER_REQUEST_NOT_FOUND",
        )
        self.request_id = request_id


class OfferNotFoundError(NotFoundError):
    def __init__(self, offer_id: str) -> None:
        super().__init__(
            message=f"Offer not found: {offer_id}",
            code="OFFER_NOT_FOUND",
        )
        self.offer_id = offer_id


class EscrowAccountNotFoundError(NotFoundError):
    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Escrow account not found: {reference}",
            code="ESCROW_ACCOUNT_NOT_FOUND",
        )


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            message=f"Milestone not found: {milestone_id}",
            code="MILESTONE_NOT_FOUND",
        )


# --- Conflict Errors ---


class InvalidStateTransitionError(ConflictError):
    """Raised when an attempted state transition is not allowed.

    Example: a milestone in PENDING cannot be released.
    """

    def __init__(self, entity: str, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted_event = attempted_event


class EscrowAlreadyExistsError(ConflictError):
    def __init__(self, offer_id: str) -> None:
        super().__init__(
            message=f"Escrow account already exists for offer: {offer_id}",
            code="ESCROW_ALREADY_EXISTS",
        )


class DuplicateOfferError(ConflictError):
    """Raised when a seller already has an offer on the same buyer request."""

    def __init__(self, buyer_request_id: str, seller_id: str) -> None:
        super().__init__(
            message=(
                f"Seller {seller_id} already has an offer "
                f"for buyer request {buyer_request_id}"
            ),
            code="DUPLICATE_OFFER",
        )
