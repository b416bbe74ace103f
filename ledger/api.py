from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from .errors import EngineError
from .models import (
    BalanceResponse,
    FailTransactionRequest,
    InitiateTransactionRequest,
    OpenWalletRequest,
    ReversalResponse,
    ReverseTransactionRequest,
    Transaction,
    TransactionHistoryResponse,
    TransactionResponse,
    Wallet,
    WalletAmountRequest,
    WalletStatusRequest,
)

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "concurrency_conflict": status.HTTP_409_CONFLICT,
    "insufficient_funds": status.HTTP_402_PAYMENT_REQUIRED,
    "insufficient_sponsorship_funds": status.HTTP_402_PAYMENT_REQUIRED,
    "validation_failed": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "limit_exceeded": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "pre_approval_required": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_covered": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "currency_mismatch": status.HTTP_422_UNPROCESSABLE_ENTITY,
}

router = APIRouter()


def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST),
        content={"detail": exc.to_detail().model_dump()},
    )


def get_engine(request: Request):
    return request.app.state.engine


@router.post("/wallets", response_model=Wallet, status_code=status.HTTP_201_CREATED, tags=["Wallets"])
def open_wallet(body: OpenWalletRequest, request: Request) -> Wallet:
    return get_engine(request).wallets.open_wallet(
        body.owner_id, body.kind, currency=body.currency, per_transaction_limit=body.per_transaction_limit
    )


@router.get("/wallets/{wallet_id}", response_model=Wallet, tags=["Wallets"])
def get_wallet(wallet_id: str, request: Request) -> Wallet:
    return get_engine(request).wallets.get_wallet(wallet_id)


@router.get("/wallets/{wallet_id}/balance", response_model=BalanceResponse, tags=["Wallets"])
def get_balance(wallet_id: str, request: Request) -> BalanceResponse:
    return get_engine(request).wallets.get_balance(wallet_id)


@router.post("/wallets/{wallet_id}/credit", response_model=BalanceResponse, tags=["Wallets"])
def credit_wallet(wallet_id: str, body: WalletAmountRequest, request: Request) -> BalanceResponse:
    wallets = get_engine(request).wallets
    wallets.credit(wallet_id, body.amount, body.currency)
    return wallets.get_balance(wallet_id)


@router.post("/wallets/{wallet_id}/freeze", response_model=Wallet, tags=["Wallets"])
def freeze_wallet(wallet_id: str, body: WalletStatusRequest, request: Request) -> Wallet:
    return get_engine(request).wallets.freeze(wallet_id, body.reason)


@router.post("/wallets/{wallet_id}/unfreeze", response_model=Wallet, tags=["Wallets"])
def unfreeze_wallet(wallet_id: str, request: Request) -> Wallet:
    return get_engine(request).wallets.unfreeze(wallet_id)


@router.get("/wallets/{wallet_id}/transactions", response_model=TransactionHistoryResponse, tags=["Wallets"])
def get_wallet_history(wallet_id: str, request: Request, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
    return get_engine(request).transactions.history(wallet_id, limit, offset)


@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def initiate_transaction(body: InitiateTransactionRequest, request: Request) -> TransactionResponse:
    txn = get_engine(request).transactions.initiate(body)
    return TransactionResponse(transaction=txn, message="Transaction initiated")


@router.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(transaction_id: str, request: Request) -> Transaction:
    return get_engine(request).transactions.get_transaction(transaction_id)


@router.post("/transactions/{transaction_id}/complete", response_model=TransactionResponse, tags=["Transactions"])
def complete_transaction(transaction_id: str, request: Request) -> TransactionResponse:
    txn = get_engine(request).transactions.complete(transaction_id)
    return TransactionResponse(transaction=txn, message="Transaction completed")


@router.post("/transactions/{transaction_id}/fail", response_model=TransactionResponse, tags=["Transactions"])
def fail_transaction(transaction_id: str, body: FailTransactionRequest, request: Request) -> TransactionResponse:
    txn = get_engine(request).transactions.fail(transaction_id, body.reason)
    return TransactionResponse(transaction=txn, message="Transaction failed")


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse, tags=["Transactions"])
def cancel_transaction(transaction_id: str, body: FailTransactionRequest, request: Request) -> TransactionResponse:
    txn = get_engine(request).transactions.cancel(transaction_id, body.reason)
    return TransactionResponse(transaction=txn, message="Transaction cancelled")


@router.post("/transactions/{transaction_id}/reverse", response_model=ReversalResponse, tags=["Transactions"])
def reverse_transaction(transaction_id: str, body: ReverseTransactionRequest, request: Request) -> ReversalResponse:
    return get_engine(request).transactions.reverse(transaction_id, body.reason, body.performed_by)
