"""
FastAPI REST API Module

REST endpoints for loan applications, approval, disbursement, payments and
refinancing, credit score queries, and overdue/standing lookups. Runs on
port 8090 by default.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .credit_scoring import LoanType
from .exceptions import (
    FatalDataError, NotFoundError, StateConflictError, TransientInfrastructureError, ValidationError
)
from .loans import Collateral, Loan, PaymentMethod, RepaymentMethod
from .logging_config import setup_logging
from .money import to_decimal
from .storage import encode_value
from .system import LedgerSystem

logger = logging.getLogger("ledger.api")


# Pydantic models for API requests
class CollateralModel(BaseModel):
    collateral_type: str
    assessed_value: str = Field(..., description="Decimal amount as string")
    discount_rate: Optional[str] = None


class LoanApplicationRequest(BaseModel):
    borrower_id: str
    loan_type: str = Field(..., description="Loan type (credit, mortgage, business, emergency)")
    amount: str = Field(..., description="Decimal amount as string")
    term_months: int
    purpose: str = ""
    collateral: Optional[CollateralModel] = None
    lender_id: Optional[str] = None
    repayment_method: str = RepaymentMethod.EQUAL_INSTALLMENT.value

    @field_validator("loan_type")
    @classmethod
    def _known_loan_type(cls, value: str) -> str:
        if value not in {t.value for t in LoanType}:
            raise ValueError(f"Unknown loan type {value}")
        return value


class ApproveRequest(BaseModel):
    approver: str
    notes: Optional[str] = None
    interest_rate: Optional[str] = None  # Decimal as string; grade rate when omitted


class RejectRequest(BaseModel):
    reason: str
    rejected_by: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: str = PaymentMethod.MANUAL.value
    idempotency_key: Optional[str] = None

    @field_validator("method")
    @classmethod
    def _external_method(cls, value: str) -> str:
        if value not in (PaymentMethod.MANUAL.value, PaymentMethod.AUTOMATIC.value):
            raise ValueError("Payment method must be manual or automatic")
        return value


class RefinanceRequest(BaseModel):
    new_amount: str
    new_rate: str
    reason: Optional[str] = None
    term_months: Optional[int] = None


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    """API representation of a loan"""
    return encode_value({
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "lender_id": loan.lender_id,
        "loan_type": loan.loan_type,
        "status": loan.status,
        "principal": loan.principal,
        "interest_rate": loan.interest_rate,
        "original_interest_rate": loan.original_interest_rate,
        "term_months": loan.term_months,
        "current_balance": loan.current_balance,
        "monthly_payment": loan.monthly_payment,
        "payments_made": loan.payments_made,
        "total_payments": loan.total_payments,
        "total_interest_paid": loan.total_interest_paid,
        "total_principal_paid": loan.total_principal_paid,
        "overdue_payments": loan.overdue_payments,
        "overdue_amount": loan.overdue_amount,
        "penalty_balance": loan.penalty_balance,
        "next_payment_date": loan.next_payment_date,
        "maturity_date": loan.maturity_date,
        "refinanced": loan.refinanced,
        "refinanced_into": loan.refinanced_into,
        "original_loan_id": loan.original_loan_id,
        "collateral_type": loan.collateral_type,
        "collateral_value": loan.collateral_value,
        "collateral_liquidation_pending": loan.collateral_liquidation_pending,
        "collateral_liquidated": loan.collateral_liquidated,
    })


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Build the API around a ledger system (a default one from config if omitted)"""
    system = system or LedgerSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        system.start_background()
        yield
        system.shutdown()

    app = FastAPI(
        title="Loan Ledger API",
        description="Loan lifecycle, credit scoring and overdue processing",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(ValueError)
    async def value_handler(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(StateConflictError)
    async def conflict_handler(request: Request, exc: StateConflictError):
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(TransientInfrastructureError)
    async def transient_handler(request: Request, exc: TransientInfrastructureError):
        logger.warning(f"Transient failure on {request.url.path}: {exc}")
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(FatalDataError)
    async def fatal_handler(request: Request, exc: FatalDataError):
        logger.error(f"Data integrity failure on {request.url.path}: {exc}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)

    def get_system() -> LedgerSystem:
        return app.state.system

    # Health check endpoint
    @app.get("/health")
    def health_check(system: LedgerSystem = Depends(get_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": system.scheduler.is_running
        }

    # Loan Endpoints
    @app.post("/loans", status_code=status.HTTP_201_CREATED)
    def apply_for_loan(request: LoanApplicationRequest, system: LedgerSystem = Depends(get_system)):
        """Submit a loan application"""
        collateral = None
        if request.collateral:
            collateral = Collateral(
                collateral_type=request.collateral.collateral_type,
                assessed_value=to_decimal(request.collateral.assessed_value),
                discount_rate=(to_decimal(request.collateral.discount_rate)
                               if request.collateral.discount_rate is not None
                               else system.collateral_discount_rate)
            )
        loan_id = system.loan_ledger.submit_application(
            borrower_id=request.borrower_id,
            loan_type=LoanType(request.loan_type),
            amount=to_decimal(request.amount),
            term_months=request.term_months,
            purpose=request.purpose,
            collateral=collateral,
            lender_id=request.lender_id,
            repayment_method=RepaymentMethod(request.repayment_method)
        )
        return {"loan_id": loan_id, "status": "pending", "message": "Loan application submitted"}

    @app.get("/loans/{loan_id}")
    def get_loan(loan_id: str, system: LedgerSystem = Depends(get_system)):
        """Get loan details"""
        loan = system.loan_ledger.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan_to_dict(loan)

    @app.post("/loans/{loan_id}/approve")
    def approve_loan(loan_id: str, request: ApproveRequest, system: LedgerSystem = Depends(get_system)):
        loan = system.loan_ledger.approve(
            loan_id, request.approver, request.notes,
            interest_rate=to_decimal(request.interest_rate) if request.interest_rate else None
        )
        return loan_to_dict(loan)

    @app.post("/loans/{loan_id}/reject")
    def reject_loan(loan_id: str, request: RejectRequest, system: LedgerSystem = Depends(get_system)):
        loan = system.loan_ledger.reject(loan_id, request.reason, request.rejected_by)
        return loan_to_dict(loan)

    @app.post("/loans/{loan_id}/disburse")
    def disburse_loan(loan_id: str, system: LedgerSystem = Depends(get_system)):
        """Disburse loan funds to the borrower"""
        loan = system.loan_ledger.disburse(loan_id)
        return loan_to_dict(loan)

    @app.post("/loans/{loan_id}/payments")
    def make_payment(loan_id: str, request: PaymentRequest, system: LedgerSystem = Depends(get_system)):
        """Apply a loan payment"""
        result = system.loan_ledger.make_payment(
            loan_id,
            to_decimal(request.amount),
            method=PaymentMethod(request.method),
            idempotency_key=request.idempotency_key
        )
        return encode_value({
            "payment_id": result.payment_id,
            "total_payment": result.total_payment,
            "penalty_portion": result.penalty_portion,
            "interest_portion": result.interest_portion,
            "principal_portion": result.principal_portion,
            "paid_off": result.paid_off,
            "replayed": result.replayed,
            "loan": loan_to_dict(result.updated_loan)
        })

    @app.get("/loans/{loan_id}/payments")
    def list_payments(loan_id: str, system: LedgerSystem = Depends(get_system)):
        payments = system.loan_ledger.get_payments(loan_id)
        return {"payments": [p.to_dict() for p in payments]}

    @app.get("/loans/{loan_id}/payoff")
    def payoff_amount(loan_id: str, system: LedgerSystem = Depends(get_system)):
        return {"loan_id": loan_id, "payoff_amount": str(system.loan_ledger.payoff_amount(loan_id))}

    @app.post("/loans/{loan_id}/refinance", status_code=status.HTTP_201_CREATED)
    def refinance_loan(loan_id: str, request: RefinanceRequest, system: LedgerSystem = Depends(get_system)):
        new_loan_id = system.loan_ledger.refinance(
            loan_id,
            to_decimal(request.new_amount),
            to_decimal(request.new_rate),
            reason=request.reason,
            term_months=request.term_months
        )
        return {"loan_id": new_loan_id, "original_loan_id": loan_id}

    @app.get("/loans/{loan_id}/schedule")
    def get_schedule(loan_id: str, system: LedgerSystem = Depends(get_system)):
        """Get the repayment schedule"""
        schedule = system.loan_ledger.get_schedule(loan_id)
        return {"schedule": [
            encode_value({
                "sequence": entry.sequence,
                "due_date": entry.due_date,
                "scheduled_payment": entry.scheduled_payment,
                "principal_portion": entry.principal_portion,
                "interest_portion": entry.interest_portion,
                "remaining_balance": entry.remaining_balance,
                "amount_paid": entry.amount_paid,
                "settled": entry.settled
            })
            for entry in schedule
        ]}

    @app.post("/loans/{loan_id}/collateral/liquidate")
    def liquidate_collateral(loan_id: str, system: LedgerSystem = Depends(get_system)):
        recovered = system.overdue_processor.liquidate_collateral(loan_id)
        return {"loan_id": loan_id, "recovered": str(recovered)}

    @app.get("/borrowers/{borrower_id}/loans")
    def borrower_loans(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        return {"loans": [loan_to_dict(l) for l in system.loan_ledger.get_borrower_loans(borrower_id)]}

    # Credit Endpoints
    @app.get("/credit/{borrower_id}")
    def credit_score(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        score = system.credit_engine.get_score(borrower_id)
        record = system.credit_engine.get_record(borrower_id)
        return encode_value({
            "borrower_id": borrower_id,
            "score": score,
            "grade": system.credit_engine.get_grade(borrower_id),
            "factors": record.factors if record else {},
            "last_calculated_at": record.last_calculated_at if record else None
        })

    @app.post("/credit/{borrower_id}/recalculate")
    def recalculate_score(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        score = system.credit_engine.calculate_score(borrower_id)
        return {"borrower_id": borrower_id, "score": score}

    @app.get("/credit/{borrower_id}/qualification")
    def qualification(borrower_id: str, loan_type: str, system: LedgerSystem = Depends(get_system)):
        result = system.credit_engine.check_qualification(borrower_id, LoanType(loan_type))
        return encode_value({
            "borrower_id": borrower_id,
            "loan_type": loan_type,
            "qualified": result.qualified,
            "score": result.score,
            "grade": result.grade,
            "minimum_score": result.minimum_score,
            "reason": result.reason
        })

    @app.get("/credit/{borrower_id}/adjustments")
    def credit_adjustments(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        return {"adjustments": [a.to_dict() for a in system.credit_engine.get_adjustments(borrower_id)]}

    # Overdue Endpoints
    @app.get("/overdue/records")
    def overdue_records(borrower_id: Optional[str] = None, loan_id: Optional[str] = None,
                        open_only: bool = False, system: LedgerSystem = Depends(get_system)):
        records = system.overdue_processor.get_overdue_records(borrower_id, loan_id, open_only)
        return {"records": [r.to_dict() for r in records]}

    @app.get("/overdue/{borrower_id}/standing")
    def borrower_standing(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        processor = system.overdue_processor
        return {
            "borrower_id": borrower_id,
            "suspended": processor.is_suspended(borrower_id),
            "blacklisted": processor.is_blacklisted(borrower_id)
        }

    @app.get("/overdue/{borrower_id}/total")
    def total_overdue(borrower_id: str, system: LedgerSystem = Depends(get_system)):
        total = system.overdue_processor.get_total_overdue_amount(borrower_id)
        return {"borrower_id": borrower_id, "total_overdue": str(total)}

    @app.get("/loans/{loan_id}/collections")
    def collection_attempts(loan_id: str, system: LedgerSystem = Depends(get_system)):
        attempts = system.overdue_processor.get_collection_attempts(loan_id)
        return {"attempts": [a.to_dict() for a in attempts]}

    # Maintenance Endpoints
    @app.post("/admin/overdue/sweep")
    def run_overdue_sweep(as_of: Optional[str] = None, system: LedgerSystem = Depends(get_system)):
        """Run an overdue sweep now"""
        result = system.overdue_processor.run_sweep(date.fromisoformat(as_of) if as_of else None)
        return encode_value({
            "as_of": result.as_of,
            "processed": result.loans_processed,
            "skipped": result.loans_skipped,
            "missed_installments": result.missed_installments,
            "penalties_accrued": result.penalties_accrued,
            "defaulted": result.defaulted,
            "blacklisted": result.blacklisted,
            "errors": result.errors
        })

    @app.get("/admin/scheduler")
    def scheduler_status(system: LedgerSystem = Depends(get_system)):
        return system.scheduler.get_status()

    @app.get("/audit/integrity")
    def verify_audit_integrity(system: LedgerSystem = Depends(get_system)):
        """Verify audit trail integrity"""
        return system.audit_trail.verify_integrity()

    return app


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, system: Optional[LedgerSystem] = None):
    """Run the FastAPI server with background tasks"""
    system = system or LedgerSystem()
    setup_logging(system.config.log_level, log_format=system.config.log_format)
    uvicorn.run(
        create_app(system),
        host=host or system.config.api_host,
        port=port or system.config.api_port,
        log_level="info"
    )
