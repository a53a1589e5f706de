from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from rebooked.extensions import db
from rebooked.models import BankingSubaccount, Order, SellerWallet, WalletTransaction
from rebooked.services.settings_service import commission_bps
from rebooked.utils.money import money_major_to_minor, money_minor_to_major, split_commission_minor

METHOD_DIRECT = "direct_bank_transfer"
METHOD_WALLET = "wallet_credit"


@dataclass
class SettlementResult:
    method: str
    success: bool
    amount: float = 0.0
    commission: float = 0.0
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "success": bool(self.success),
            "amount": float(self.amount),
            "commission": float(self.commission),
            "error": self.error,
        }


def payout_ready_subaccount(seller_id: int) -> BankingSubaccount | None:
    row = BankingSubaccount.query.filter_by(user_id=int(seller_id)).first()
    if row is not None and row.is_payout_ready:
        return row
    return None


def seller_payout(order: Order) -> tuple[float, float]:
    """Seller share and platform commission for the book price (delivery fee excluded)."""
    seller_minor, platform_minor = split_commission_minor(money_major_to_minor(order.amount), commission_bps())
    return money_minor_to_major(seller_minor), money_minor_to_major(platform_minor)


def _credit_wallet(order: Order, payout: float, commission: float) -> SettlementResult:
    seller_id = int(order.seller_id)
    wallet = SellerWallet.query.filter_by(user_id=seller_id).first()
    if wallet is None:
        wallet = SellerWallet(user_id=seller_id, available_balance=0.0, total_earned=0.0)
        db.session.add(wallet)
        db.session.flush()

    db.session.add(
        WalletTransaction(
            user_id=seller_id,
            order_id=int(order.id),
            type="credit",
            amount=payout,
            gross_amount=float(order.amount or 0.0),
            commission_amount=commission,
            reference=f"order:{int(order.id)}",
            description=f"Sale of {order.book_title or 'book'} (order #{int(order.id)})",
        )
    )
    SellerWallet.query.filter_by(id=int(wallet.id)).update(
        {
            "available_balance": SellerWallet.available_balance + payout,
            "total_earned": SellerWallet.total_earned + payout,
            "updated_at": datetime.utcnow(),
        },
        synchronize_session=False,
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = WalletTransaction.query.filter_by(order_id=int(order.id), type="credit").first()
        if existing is None:
            # lost a race creating the wallet row, not a duplicate credit
            return SettlementResult(
                method=METHOD_WALLET, success=False, amount=payout, commission=commission, error="wallet_write_conflict"
            )
        current_app.logger.info("settlement_already_credited order_id=%s seller_id=%s", order.id, seller_id)
        return SettlementResult(method=METHOD_WALLET, success=True, amount=float(existing.amount or 0.0), commission=commission)
    return SettlementResult(method=METHOD_WALLET, success=True, amount=payout, commission=commission)


def settle(order: Order) -> SettlementResult:
    """Pay the seller for a delivered order.

    A seller with an active banking subaccount is paid by the provider's
    split transfer and nothing is written here. Everyone else gets a wallet
    credit of the book price less platform commission, written once per
    order.
    """
    payout, commission = seller_payout(order)
    try:
        if payout_ready_subaccount(int(order.seller_id)) is not None:
            current_app.logger.info("settlement_direct_transfer order_id=%s seller_id=%s", order.id, order.seller_id)
            return SettlementResult(method=METHOD_DIRECT, success=True, amount=payout, commission=commission)
        return _credit_wallet(order, payout, commission)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("settlement_write_failed order_id=%s", order.id)
        return SettlementResult(method=METHOD_WALLET, success=False, amount=payout, commission=commission, error=str(exc)[:300])


def wallet_balance(seller_id: int) -> float:
    wallet = SellerWallet.query.filter_by(user_id=int(seller_id)).first()
    return float(wallet.available_balance or 0.0) if wallet is not None else 0.0
