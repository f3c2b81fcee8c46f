import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from config import get_settings
from ledger import Ledger
from periods import resolve_month
from schemas import (
    AccountIn,
    AccountTypeIn,
    AccountUpdate,
    AssetValueIn,
    BudgetIn,
    BudgetItemIn,
    BudgetUpdate,
    BulkTagIn,
    ShareIn,
    SplitBatchIn,
    SplitIn,
    SplitUpdate,
    TagBulkUpdate,
    TagIn,
    TagMoveIn,
    TagUpdate,
    TransactionIn,
    TransactionLinkIn,
    TransactionUpdate,
)
from services import InUseError, LedgerError, NotFoundError, ValidationError

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Family Ledger")


@lru_cache(maxsize=1)
def get_ledger() -> Ledger:
    return Ledger()


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, InUseError):
        status = 409
    else:
        status = 400
    body: dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["rule"] = exc.rule
        if exc.remaining_cents is not None:
            body["remaining_cents"] = exc.remaining_cents
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _reconcile(ledger: Ledger, user_id: str, account_id: int) -> int:
    return ledger.force_update(user_id, account_id)


@app.post("/api/me/bootstrap", status_code=204)
def bootstrap(user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)):
    ledger.bootstrap_user(user_id)
    return Response(status_code=204)


# account types


@app.get("/api/account-types")
def list_account_types(
    user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.list_account_types(user_id)


@app.post("/api/account-types", status_code=201)
def create_account_type(
    data: AccountTypeIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.create_account_type(user_id, data)


@app.put("/api/account-types/{type_id}")
def update_account_type(
    type_id: int,
    data: AccountTypeIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_account_type(user_id, type_id, data)


@app.delete("/api/account-types/{type_id}", status_code=204)
def delete_account_type(
    type_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_account_type(user_id, type_id)
    return Response(status_code=204)


# accounts


@app.get("/api/accounts")
def list_accounts(user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)):
    return ledger.list_accounts(user_id)


@app.post("/api/accounts", status_code=201)
def create_account(
    data: AccountIn, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.create_account(user_id, data)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.get_account(user_id, account_id)


@app.patch("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    data: AccountUpdate,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    account = ledger.update_account(user_id, account_id, data)
    if "initial_balance_cents" in data.model_fields_set:
        _reconcile(ledger, user_id, account_id)
        account = ledger.get_account(user_id, account_id)
    return account


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_account(user_id, account_id)
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/share")
def share_account(
    account_id: int,
    data: ShareIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.share_account(user_id, account_id, data.user_id)


@app.delete("/api/accounts/{account_id}/share/{collaborator_id}")
def unshare_account(
    account_id: int,
    collaborator_id: str,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.unshare_account(user_id, account_id, collaborator_id)


@app.get("/api/accounts/{account_id}/transactions")
def list_transactions(
    account_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.list_transactions(user_id, account_id)


@app.get("/api/accounts/{account_id}/balance")
def check_balance(
    account_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    status = ledger.check_balance(user_id, account_id)
    return {
        "account_id": status.account_id,
        "cached_cents": status.cached_cents,
        "recalculated_cents": status.recalculated_cents,
        "drift_cents": status.drift_cents,
    }


@app.post("/api/accounts/{account_id}/balance/refresh")
def refresh_balance(
    account_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return {"account_id": account_id, "balance_cents": _reconcile(ledger, user_id, account_id)}


@app.post("/api/accounts/{account_id}/asset-value")
def update_asset_value(
    account_id: int,
    data: AssetValueIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    txn = ledger.update_asset_value(user_id, account_id, data.balance_cents, data.on)
    return {
        "transaction": txn,
        "account": ledger.get_account(user_id, account_id),
    }


# transactions


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    txn = ledger.create_transaction(user_id, data)
    _reconcile(ledger, user_id, txn.account_id)
    return txn


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.get_transaction(user_id, transaction_id)


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    txn = ledger.update_transaction(user_id, transaction_id, data)
    _reconcile(ledger, user_id, txn.account_id)
    return txn


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    account_id = ledger.get_transaction(user_id, transaction_id).account_id
    ledger.delete_transaction(user_id, transaction_id)
    _reconcile(ledger, user_id, account_id)
    return Response(status_code=204)


@app.post("/api/transactions/bulk-tags")
def bulk_tag_transactions(
    data: BulkTagIn, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.bulk_assign_tags(user_id, data.transaction_ids, data.tag_ids)


@app.get("/api/transactions/{transaction_id}/splits")
def list_splits(
    transaction_id: int,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.list_splits(user_id, transaction_id)


@app.post("/api/transactions/{transaction_id}/splits", status_code=201)
def split_transaction(
    transaction_id: int,
    specs: list[SplitIn],
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.split(user_id, transaction_id, specs)


@app.patch("/api/transactions/{transaction_id}/splits")
def update_splits(
    transaction_id: int,
    data: SplitBatchIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_splits(user_id, transaction_id, data.updates, data.remove)


@app.delete("/api/transactions/{transaction_id}/splits")
def merge_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.merge(user_id, transaction_id)


@app.patch("/api/splits/{split_id}")
def update_split(
    split_id: int,
    data: SplitUpdate,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_split(user_id, split_id, data)


@app.delete("/api/splits/{split_id}", status_code=204)
def delete_split(
    split_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_split(user_id, split_id)
    return Response(status_code=204)


# links


@app.post("/api/links", status_code=201)
def link_transactions(
    data: TransactionLinkIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.link_transactions(user_id, data)


@app.get("/api/transactions/{transaction_id}/links")
def transaction_links(
    transaction_id: int,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.links_for(user_id, transaction_id)


@app.delete("/api/links/{link_id}", status_code=204)
def unlink_transactions(
    link_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.unlink_transactions(user_id, link_id)
    return Response(status_code=204)


# tags


@app.get("/api/tags")
def list_tags(user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)):
    return ledger.list_tags(user_id)


@app.get("/api/tags/tree")
def tag_tree(user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)):
    return ledger.get_hierarchy_tree(user_id)


@app.post("/api/tags", status_code=201)
def create_tag(
    data: TagIn, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.create_tag(
        user_id,
        data.name,
        data.level,
        data.parent_id,
        color=data.color,
        order=data.order,
    )


@app.post("/api/tags/bulk")
def bulk_update_tags(
    items: list[TagBulkUpdate],
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.bulk_update_tags(user_id, items)


@app.patch("/api/tags/{tag_id}")
def update_tag(
    tag_id: int,
    data: TagUpdate,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_tag(user_id, tag_id, data)


@app.post("/api/tags/{tag_id}/move")
def move_tag(
    tag_id: int,
    data: TagMoveIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.move_tag(user_id, tag_id, data.level, data.parent_id)


@app.delete("/api/tags/{tag_id}", status_code=204)
def delete_tag(
    tag_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_tag(user_id, tag_id)
    return Response(status_code=204)


# budgets


@app.get("/api/budgets")
def list_budgets(
    month: Optional[int] = None,
    year: Optional[int] = None,
    period: Optional[str] = None,
    active_only: bool = False,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    if period:
        try:
            resolved = resolve_month(period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        month, year = resolved.start.month, resolved.start.year
    return ledger.list_budgets(
        user_id, month=month, year=year, active_only=active_only
    )


@app.post("/api/budgets", status_code=201)
def create_budget(
    data: BudgetIn, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.create_budget(user_id, data)


@app.patch("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_budget(user_id, budget_id, data)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_budget(user_id, budget_id)
    return Response(status_code=204)


@app.post("/api/budgets/{budget_id}/items", status_code=201)
def add_budget_item(
    budget_id: int,
    data: BudgetItemIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.add_budget_item(user_id, budget_id, data)


@app.put("/api/budget-items/{item_id}")
def update_budget_item(
    item_id: int,
    data: BudgetItemIn,
    user_id: str = Depends(current_user),
    ledger: Ledger = Depends(get_ledger),
):
    return ledger.update_budget_item(user_id, item_id, data)


@app.delete("/api/budget-items/{item_id}", status_code=204)
def delete_budget_item(
    item_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    ledger.delete_budget_item(user_id, item_id)
    return Response(status_code=204)


@app.get("/api/budgets/{budget_id}/actual")
def budget_vs_actual(
    budget_id: int, user_id: str = Depends(current_user), ledger: Ledger = Depends(get_ledger)
):
    return ledger.get_budget_vs_actual(budget_id, user_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
