from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.exc import SQLAlchemyError
from storefront.cart.repository import capture_cart_snapshot, clear_cart_items, clear_user_cart
from storefront.common.custom_exceptions import (
    Forbidden, GatewayError, InsufficientStock, InvalidStatusTransition, NotFound, OrderNotFound, OrderPersistFailure, PersistFailure,
    StorefrontError, ValidationError,
)
from storefront.config.settings import Settings
from storefront.inventory.repository import reserve_lines
from storefront.orders.constants import CANCELLABLE_STATUSES, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, REUSABLE_REMOTE_STATUSES, logger
from storefront.orders.notifications import OrderNotifier
from storefront.orders.repository import (
    apply_refund, claim_refund, find_order_by_capture, find_order_by_correlation, find_provider_order,
    find_recent_pending_gateway_order, get_order_owner, get_user_address, get_user_contact, insert_order_aggregate,
    list_orders, load_order, mark_payment_failed, mark_payment_refunded, mark_payment_succeeded, mark_settled,
    order_lines, record_correlation, release_refund_claim, serialize_order, settlement_state, stamp_stock_committed,
)
from storefront.orders.status_machine import apply_status_transition, parse_status, validate_transition
from storefront.orders.utils import address_snapshot, compute_order_totals, generate_order_number
from storefront.payments.gateways.base import (
    CONFIRM_PROCESSING, CONFIRM_REQUIRES_ACTION, CONFIRM_SUCCEEDED,
    EVENT_CAPTURE_COMPLETED, EVENT_CAPTURE_FAILED, EVENT_REFUNDED, REMOTE_COMPLETED,
    ConfirmResult, GatewayEvent, GatewayRegistry, LineItem, PaymentGateway,
)
from storefront.payments.repository import mark_webhook_processed, mark_webhook_received, webhook_error_recorded
from storefront.schema.full_schema import (
    CancelledBy, OrderPaymentStatus, OrderStatus, PaymentMethod, PaymentStatus, SettlementTiming, WebhookEventStatus,
)

ADMIN_ROLE = "admin"


def parse_payment_method(value: Optional[str]) -> str:
    try:
        return PaymentMethod(value or PaymentMethod.CASH_ON_DELIVERY.value).value
    except ValueError:
        raise ValidationError(f"Unsupported payment method {value!r}",
                              details={"allowed": [m.value for m in PaymentMethod]})


class CheckoutOrchestrator:
    """
    Runs the checkout saga. Every step opens its own session and transaction from `session_factory`
    and no transaction is ever held open while a payment provider is being called.
    """

    def __init__(self, session_factory, gateways: GatewayRegistry, notifier: OrderNotifier, settings: Settings):
        self.session_factory = session_factory
        self.gateways = gateways
        self.notifier = notifier
        self.settings = settings

    # ------------------------------------------------------------------------------------------
    # order creation

    async def create_order(self, user_id: int, cart_id: Optional[int], address_id: int,
                           payment_method: Optional[str] = None, notes: Optional[str] = None,
                           billing_address_id: Optional[int] = None) -> Dict[str, Any]:

        method = parse_payment_method(payment_method)
        gateway = self.gateways.for_method(method)

        if gateway.settlement_timing == SettlementTiming.IMMEDIATE.value:
            return await self._create_immediate(gateway, user_id, cart_id, address_id, billing_address_id, notes)
        return await self._create_deferred(gateway, user_id, cart_id, address_id, billing_address_id, notes)

    async def _persist_order(self, session, gateway: PaymentGateway, user_id: int, cart_id: Optional[int],
                             address_id: int, billing_address_id: Optional[int], notes: Optional[str]):
        snapshot = await capture_cart_snapshot(session, user_id, cart_id)
        shipping = await get_user_address(session, user_id, address_id)
        billing = shipping
        if billing_address_id is not None and billing_address_id != address_id:
            billing = await get_user_address(session, user_id, billing_address_id)

        totals = compute_order_totals(snapshot["items"], self.settings.TAX_RATE_BPS, self.settings.SHIPPING_FLAT)
        if gateway.settlement_timing == SettlementTiming.DEFERRED.value and totals["total"] < 1:
            raise ValidationError("Order total must be at least 0.01")

        order = await insert_order_aggregate(
            session,
            user_id=user_id,
            order_number=generate_order_number(),
            snapshot=snapshot,
            totals=totals,
            payment_method=gateway.payment_method,
            settlement_timing=gateway.settlement_timing,
            provider=gateway.name,
            currency=self.settings.CURRENCY,
            shipping_address=address_snapshot(shipping),
            billing_address=address_snapshot(billing),
            notes=notes,
        )
        return order, snapshot, totals

    async def _create_immediate(self, gateway, user_id, cart_id, address_id, billing_address_id, notes):
        try:
            async with self.session_factory() as session, session.begin():
                order, snapshot, totals = await self._persist_order(
                    session, gateway, user_id, cart_id, address_id, billing_address_id, notes)
                await reserve_lines(session, snapshot["items"])
                await stamp_stock_committed(session, order.id)
                await clear_cart_items(session, snapshot["cart_id"])
        except StorefrontError:
            raise
        except SQLAlchemyError:
            logger.exception("checkout.persist_failed", extra={"user_id": user_id, "payment_method": gateway.payment_method})
            raise OrderPersistFailure()

        logger.info("checkout.order_created",
                    extra={"order_id": order.id, "order_number": order.order_number, "user_id": user_id,
                           "payment_method": gateway.payment_method, "amount": totals["total"]})
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": "created",
            "payment_method": gateway.payment_method,
            "amount": totals["total"],
            "currency": order.currency,
        }

    async def _reuse_pending_order(self, gateway: PaymentGateway, user_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            existing = await find_recent_pending_gateway_order(
                session, user_id, gateway.payment_method, self.settings.CHECKOUT_DEDUPE_MINUTES)
        if existing is None:
            return None

        try:
            remote = await gateway.fetch_remote_order(existing["correlation_id"])
        except GatewayError as ex:
            logger.info("checkout.dedupe_remote_unavailable",
                        extra={"order_id": existing["order_id"], "reason": ex.message})
            return None

        if remote.status not in REUSABLE_REMOTE_STATUSES:
            logger.info("checkout.dedupe_remote_stale",
                        extra={"order_id": existing["order_id"], "remote_status": remote.status})
            return None

        logger.info("checkout.order_reused", extra={"order_id": existing["order_id"], "user_id": user_id})
        return {
            "order_id": existing["order_id"],
            "order_number": existing["order_number"],
            "status": "created",
            "payment_method": gateway.payment_method,
            "amount": existing["amount"],
            "currency": existing["currency"],
            "correlation_id": remote.correlation_id,
            "approval_url": remote.approval_url,
            "client_secret": remote.client_secret,
            "reused": True,
        }

    async def _open_remote_order(self, gateway: PaymentGateway, order_ref: Dict[str, Any],
                                 line_items: List[LineItem], totals: Dict[str, int]):
        remote = await gateway.create_remote_order(
            order_ref["amount"], order_ref["currency"], line_items,
            reference={
                "order_id": order_ref["order_id"],
                "order_number": order_ref["order_number"],
                "user_id": order_ref["user_id"],
                "totals": totals,
            },
        )
        async with self.session_factory() as session, session.begin():
            await record_correlation(session, order_ref["order_id"], remote.correlation_id, remote.raw)
        return remote

    async def _create_deferred(self, gateway, user_id, cart_id, address_id, billing_address_id, notes):
        reused = await self._reuse_pending_order(gateway, user_id)
        if reused is not None:
            return reused

        try:
            async with self.session_factory() as session, session.begin():
                order, snapshot, totals = await self._persist_order(
                    session, gateway, user_id, cart_id, address_id, billing_address_id, notes)
        except StorefrontError:
            raise
        except SQLAlchemyError:
            logger.exception("checkout.persist_failed", extra={"user_id": user_id, "payment_method": gateway.payment_method})
            raise OrderPersistFailure()

        order_ref = {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": user_id,
            "amount": totals["total"],
            "currency": order.currency,
        }
        line_items = [LineItem(product_id=it["product_id"], name=it["product_name"],
                               quantity=it["quantity"], unit_price=it["unit_price"]) for it in snapshot["items"]]

        # order stays pending if the provider call fails , the buyer can retry or switch method
        try:
            remote = await self._open_remote_order(gateway, order_ref, line_items, totals)
        except GatewayError as ex:
            logger.warning("checkout.remote_order_failed",
                           extra={"order_id": order.id, "provider": gateway.name, "reason": ex.message, "timeout": ex.timeout})
            raise

        logger.info("checkout.order_created",
                    extra={"order_id": order.id, "order_number": order.order_number, "user_id": user_id,
                           "payment_method": gateway.payment_method, "amount": totals["total"],
                           "correlation_id": remote.correlation_id})
        return {
            **{k: order_ref[k] for k in ("order_id", "order_number", "amount", "currency")},
            "status": "created",
            "payment_method": gateway.payment_method,
            "correlation_id": remote.correlation_id,
            "approval_url": remote.approval_url,
            "client_secret": remote.client_secret,
            "reused": False,
        }

    # ------------------------------------------------------------------------------------------
    # synchronous payment paths

    async def _pending_order_for_user(self, order_id: int, user_id: int) -> Dict[str, Any]:
        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        if order.user_id != user_id:
            raise OrderNotFound()
        if order.payment_status != OrderPaymentStatus.PENDING.value or order.status != OrderStatus.PENDING.value:
            raise ValidationError(f"Order payment already {order.payment_status}",
                                  details={"status": order.status, "payment_status": order.payment_status})
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "amount": order.total,
            "currency": order.currency,
            "payment_method": order.payment_method,
            "correlation_id": order.payment.correlation_id if order.payment else None,
            "items": [LineItem(product_id=it.product_id, name=it.product_name, quantity=it.quantity,
                               unit_price=it.unit_price) for it in order.items],
            "totals": {"subtotal": order.subtotal, "tax": order.tax, "shipping": order.shipping},
        }

    async def _apply_confirm_result(self, order_ref: Dict[str, Any], result: ConfirmResult) -> Dict[str, Any]:
        order_id = order_ref["order_id"]
        correlation_id = result.correlation_id or order_ref["correlation_id"]
        data = {"order_id": order_id, "correlation_id": correlation_id}

        if result.status == CONFIRM_SUCCEEDED:
            settled = await self.settle_order(order_id, capture_id=result.capture_id, gateway_response=result.raw)
            return {**data, "status": CONFIRM_SUCCEEDED, "settled": settled}

        async with self.session_factory() as session, session.begin():
            await record_correlation(session, order_id, correlation_id, result.raw)

        if result.status == CONFIRM_REQUIRES_ACTION:
            logger.info("payment.requires_action", extra={"order_id": order_id, "correlation_id": correlation_id})
            return {**data, "status": CONFIRM_REQUIRES_ACTION, "client_secret": result.continuation}

        if result.status == CONFIRM_PROCESSING:
            logger.info("payment.processing", extra={"order_id": order_id, "correlation_id": correlation_id})
            return {**data, "status": CONFIRM_PROCESSING}

        provider_status = result.raw.get("status") if isinstance(result.raw, dict) else None
        logger.warning("payment.confirm_failed",
                       extra={"order_id": order_id, "correlation_id": correlation_id, "provider_status": provider_status})
        raise GatewayError(f"Payment failed with status: {provider_status}", status_code=400,
                           details={"order_id": order_id, "status": provider_status})

    async def confirm_payment(self, order_id: int, payment_method_ref: Optional[str], user_id: int,
                              return_url: Optional[str] = None) -> Dict[str, Any]:

        order_ref = await self._pending_order_for_user(order_id, user_id)
        gateway = self.gateways.for_method(order_ref["payment_method"])
        if gateway.payment_method != PaymentMethod.CARD_GATEWAY.value:
            raise ValidationError("Order is not a card payment")

        correlation_id = order_ref["correlation_id"]
        if not correlation_id:
            remote = await self._open_remote_order(gateway, order_ref, order_ref["items"], order_ref["totals"])
            correlation_id = order_ref["correlation_id"] = remote.correlation_id

        result = await gateway.confirm(correlation_id, payment_method_ref, return_url)
        return await self._apply_confirm_result(order_ref, result)

    async def resume_step_up(self, order_id: int, correlation_id: str, user_id: int) -> Dict[str, Any]:
        """Called once the client finished 3-D Secure. The webhook may have settled the order already."""

        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        if order.user_id != user_id:
            raise OrderNotFound()
        if order.payment is None or order.payment.correlation_id != correlation_id:
            raise ValidationError("Payment reference does not match this order")
        if order.payment_status == OrderPaymentStatus.PAID.value:
            return {"order_id": order.id, "correlation_id": correlation_id, "status": CONFIRM_SUCCEEDED, "settled": False}
        if order.payment_status != OrderPaymentStatus.PENDING.value or order.status != OrderStatus.PENDING.value:
            raise ValidationError(f"Order payment already {order.payment_status}")

        gateway = self.gateways.for_method(order.payment_method)
        if gateway.payment_method != PaymentMethod.CARD_GATEWAY.value:
            raise ValidationError("Order is not a card payment")

        result = await gateway.resume(correlation_id)
        return await self._apply_confirm_result({"order_id": order.id, "correlation_id": correlation_id}, result)

    async def capture_redirect_payment(self, order_id: int, gateway_order_id: str, user_id: int) -> Dict[str, Any]:

        order_ref = await self._pending_order_for_user(order_id, user_id)
        if order_ref["correlation_id"] != gateway_order_id:
            raise ValidationError("Gateway order does not belong to this order")
        gateway = self.gateways.for_method(order_ref["payment_method"])

        try:
            capture = await gateway.capture(gateway_order_id)
            if capture.status != REMOTE_COMPLETED:
                raise GatewayError(f"Payment capture failed. Status: {capture.status}", provider=gateway.name,
                                   status_code=400, details={"status": capture.status})
        except GatewayError as ex:
            if ex.timeout:
                # outcome unknown , leave it pending for an explicit status check
                logger.warning("capture.timeout", extra={"order_id": order_id, "correlation_id": gateway_order_id})
                raise
            await self._fail_payment_best_effort(order_id, f"capture failed: {ex.message}")
            raise

        settled = await self.settle_order(order_id, capture_id=capture.capture_id, gateway_response=capture.raw)
        return {
            "order_id": order_id,
            "status": CONFIRM_SUCCEEDED,
            "transaction_id": capture.capture_id,
            "correlation_id": gateway_order_id,
            "amount": capture.amount,
            "settled": settled,
        }

    async def _fail_payment_best_effort(self, order_id: int, reason: str,
                                        gateway_response: Optional[Dict[str, Any]] = None) -> bool:
        try:
            async with self.session_factory() as session, session.begin():
                changed = await mark_payment_failed(session, order_id, reason, gateway_response)
        except Exception:
            logger.exception("payment.fail_cleanup_failed", extra={"order_id": order_id})
            return False
        if changed:
            logger.info("payment.marked_failed", extra={"order_id": order_id, "reason": reason})
        return changed

    # ------------------------------------------------------------------------------------------
    # settlement

    async def settle_order(self, order_id: int, capture_id: Optional[str] = None,
                           gateway_response: Optional[Dict[str, Any]] = None) -> bool:
        """
        Commit stock for a paid gateway order. The guard and the act are one conditional update ,
        so of two racing callers (sync capture and webhook) exactly one gets True and moves stock.
        """

        try:
            async with self.session_factory() as session, session.begin():
                if not await mark_settled(session, order_id):
                    self._log_unsettled(order_id, capture_id, await settlement_state(session, order_id))
                    return False
                lines = await order_lines(session, order_id)
                await reserve_lines(session, lines)
                await mark_payment_succeeded(session, order_id, capture_id, gateway_response)
                owner_id = await get_order_owner(session, order_id)
                await clear_user_cart(session, owner_id)
        except InsufficientStock as ex:
            # money is taken but the stock is gone , needs a human
            logger.error("settlement.stock_shortfall",
                         extra={"order_id": order_id, "product_id": ex.product_id, "requested": ex.requested,
                                "available": ex.available, "capture_id": capture_id, "reconcile": True})
            raise
        except SQLAlchemyError:
            logger.exception("settlement.persist_failed", extra={"order_id": order_id})
            raise PersistFailure("Could not settle the order , please retry")

        logger.info("settlement.completed", extra={"order_id": order_id, "capture_id": capture_id})
        return True

    def _log_unsettled(self, order_id: int, capture_id: Optional[str], state: Optional[Dict[str, Any]]) -> None:
        settled_before = (
            state is not None
            and state["settlement_timing"] == SettlementTiming.DEFERRED.value
            and state["payment_status"] in (OrderPaymentStatus.PAID.value, OrderPaymentStatus.REFUNDED.value)
        )
        if settled_before:
            logger.info("settlement.already_settled", extra={"order_id": order_id})
            return
        # money came in for an order that can no longer take it
        logger.warning("settlement.order_not_payable",
                       extra={"order_id": order_id, "capture_id": capture_id, "reconcile": True, **(state or {})})

    # ------------------------------------------------------------------------------------------
    # webhooks

    async def handle_gateway_webhook(self, gateway_name: str, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        """Never raises. The provider always gets a 200 , what went wrong is in the logs and the ledger."""

        try:
            gateway = self.gateways.get(gateway_name)
        except NotFound:
            logger.warning("webhook.unknown_gateway", extra={"provider": gateway_name})
            return {"received": True}

        try:
            valid = await gateway.verify_webhook_signature(headers, raw_body)
        except Exception:
            logger.exception("webhook.verification_error", extra={"provider": gateway.name})
            return {"received": True}
        if not valid:
            logger.warning("webhook.invalid_signature", extra={"provider": gateway.name})
            return {"received": True}

        try:
            event = gateway.parse_webhook_event(headers, raw_body)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("webhook.unparseable", extra={"provider": gateway.name})
            return {"received": True}
        if not event.event_id:
            logger.warning("webhook.missing_event_id", extra={"provider": gateway.name, "event_type": event.event_type})
            return {"received": True}

        try:
            return await self._process_event(event)
        except Exception:
            logger.exception("webhook.processing_failed",
                             extra={"provider": event.provider, "provider_event_id": event.event_id})
            return {"received": True}

    async def _resolve_event_order(self, session, event: GatewayEvent) -> Optional[int]:
        # only orders whose payment this provider holds
        if event.correlation_id:
            found = await find_order_by_correlation(session, event.correlation_id, provider=event.provider)
            if found:
                return found["order_id"]
        if event.capture_id:
            order_id = await find_order_by_capture(session, event.capture_id, provider=event.provider)
            if order_id:
                return int(order_id)
        if event.reference and event.reference.isdigit():
            order_id = await find_provider_order(session, int(event.reference), event.provider)
            if order_id:
                return int(order_id)
        return None

    async def _process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        async with self.session_factory() as session, session.begin():
            order_id = await self._resolve_event_order(session, event)
            ev = await mark_webhook_received(session, event, order_id)

        log_extra = {"provider": event.provider, "provider_event_id": event.event_id,
                     "event_type": event.event_type, "order_id": order_id}

        if ev["processed_at"] is not None:
            logger.info("webhook.duplicate", extra=log_extra)
            return {"received": True, "note": "already processed"}

        if order_id is None or event.kind not in (EVENT_CAPTURE_COMPLETED, EVENT_CAPTURE_FAILED, EVENT_REFUNDED):
            logger.info("webhook.ignored", extra={**log_extra, "kind": event.kind})
            async with self.session_factory() as session, session.begin():
                await mark_webhook_processed(session, ev["id"], WebhookEventStatus.IGNORED.value,
                                             last_error=None if order_id else "no matching order")
            return {"received": True, "note": "ignored"}

        try:
            outcome = await self._dispatch_event(event, order_id)
        except Exception as ex:
            logger.exception("webhook.dispatch_failed", extra=log_extra)
            async with self.session_factory() as session, session.begin():
                await webhook_error_recorded(session, ev["id"], f"{type(ex).__name__}: {ex}")
            return {"received": True, "note": "error recorded"}

        async with self.session_factory() as session, session.begin():
            await mark_webhook_processed(session, ev["id"], order_id=order_id)
        logger.info("webhook.processed", extra={**log_extra, "outcome": outcome})
        return {"received": True, "note": outcome}

    async def _dispatch_event(self, event: GatewayEvent, order_id: int) -> str:
        if event.kind == EVENT_CAPTURE_COMPLETED:
            settled = await self.settle_order(order_id, capture_id=event.capture_id, gateway_response=event.raw)
            return "settled" if settled else "already settled"

        if event.kind == EVENT_CAPTURE_FAILED:
            # stock was never committed for a deferred order , nothing to give back
            async with self.session_factory() as session, session.begin():
                changed = await mark_payment_failed(session, order_id, f"gateway event {event.event_type}", event.raw)
            return "payment failed" if changed else "not pending"

        async with self.session_factory() as session, session.begin():
            changed = await mark_payment_refunded(session, order_id, event.amount, event.raw)
        return "refunded" if changed else "not refundable"

    # ------------------------------------------------------------------------------------------
    # status changes

    async def _notify(self, user_id: int, order_data: Dict[str, Any], previous_status: str) -> None:
        try:
            async with self.session_factory() as session:
                recipient = await get_user_contact(session, user_id)
            await self.notifier.order_status_changed(recipient or {}, order_data, previous_status)
        except Exception:
            logger.exception("notify.failed", extra={"order_id": order_data.get("order_id"),
                                                     "to_status": order_data.get("status")})

    async def cancel_order(self, order_id: int, user_id: int, role: Optional[str], reason: Optional[str],
                           notes: Optional[str] = None) -> Dict[str, Any]:

        is_admin = role == ADMIN_ROLE
        async with self.session_factory() as session, session.begin():
            order = await load_order(session, order_id, for_update=True)
            if not is_admin and order.user_id != user_id:
                raise OrderNotFound()
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidStatusTransition(order.status, OrderStatus.CANCELLED.value)

            actor = CancelledBy.ADMIN.value if is_admin else CancelledBy.CUSTOMER.value
            previous = await apply_status_transition(session, order, OrderStatus.CANCELLED.value,
                                                     actor=actor, reason=reason, notes=notes)
            data = serialize_order(order)

        logger.info("order.cancelled", extra={"order_id": order_id, "cancelled_by": actor, "from_status": previous})
        if (data["payment_status"] == OrderPaymentStatus.PAID.value
                and data["payment_method"] != PaymentMethod.CASH_ON_DELIVERY.value):
            logger.warning("order.cancelled_paid_needs_refund", extra={"order_id": order_id, "reconcile": True})

        await self._notify(order.user_id, data, previous)
        return data

    async def update_order_status(self, order_id: int, new_status: str, actor_role: Optional[str],
                                  reason: Optional[str] = None) -> Dict[str, Any]:
        if actor_role != ADMIN_ROLE:
            raise Forbidden("Only admins can change order status")

        target = parse_status(new_status)
        if target == OrderStatus.REFUNDED.value:
            return await self.refund_order(order_id, None, reason, actor_role)

        async with self.session_factory() as session, session.begin():
            order = await load_order(session, order_id, for_update=True)
            actor = CancelledBy.ADMIN.value if target == OrderStatus.CANCELLED.value else None
            previous = await apply_status_transition(session, order, target, actor=actor, reason=reason)
            data = serialize_order(order)

        logger.info("order.status_changed", extra={"order_id": order_id, "from_status": previous, "to_status": target})
        await self._notify(order.user_id, data, previous)
        return data

    async def refund_order(self, order_id: int, amount: Optional[int], reason: Optional[str],
                           actor_role: Optional[str]) -> Dict[str, Any]:
        if actor_role != ADMIN_ROLE:
            raise Forbidden("Only admins can refund orders")

        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        validate_transition(order.status, OrderStatus.REFUNDED.value)
        payment = order.payment
        if payment is not None and payment.status == PaymentStatus.REFUNDING.value:
            raise ValidationError("A refund for this order is already in progress")
        if payment is None or payment.status != PaymentStatus.SUCCEEDED.value:
            raise ValidationError("Only settled payments can be refunded")

        remaining = payment.amount - payment.refunded_amount
        amount = remaining if amount is None else int(amount)
        if amount <= 0 or amount > remaining:
            raise ValidationError("Refund amount out of range", details={"refundable": remaining})

        async with self.session_factory() as session, session.begin():
            claimed = await claim_refund(session, order_id, payment.refunded_amount)
        if not claimed:
            logger.warning("refund.already_in_progress", extra={"order_id": order_id})
            raise ValidationError("A refund for this order is already in progress")

        # same key for a retry of the same refund , the provider pays it out once
        idempotency_key = f"refund-{order_id}-{payment.refunded_amount}"
        gateway = self.gateways.for_method(order.payment_method)
        try:
            refund = await gateway.refund(payment.capture_id or str(payment.public_id), amount, order.currency,
                                          reason, idempotency_key=idempotency_key)
        except Exception:
            async with self.session_factory() as session, session.begin():
                await release_refund_claim(session, order_id)
            raise

        try:
            async with self.session_factory() as session, session.begin():
                order = await load_order(session, order_id, for_update=True)
                previous = order.status
                if apply_refund(order.payment, order.payment.refunded_amount + amount, refund.raw):
                    order.payment_status = OrderPaymentStatus.REFUNDED.value
                    await apply_status_transition(session, order, OrderStatus.REFUNDED.value, reason=reason)
                data = serialize_order(order)
        except (StorefrontError, SQLAlchemyError):
            logger.error("refund.record_failed",
                         extra={"order_id": order_id, "refund_id": refund.refund_id, "reconcile": True})
            raise

        logger.info("order.refunded", extra={"order_id": order_id, "refund_id": refund.refund_id, "amount": amount,
                                             "refunded_total": data["payment"]["refunded_amount"]})
        if data["status"] != previous:
            await self._notify(order.user_id, {**data, "refund_id": refund.refund_id}, previous)
        return {**data, "refund_id": refund.refund_id}

    # ------------------------------------------------------------------------------------------
    # reads

    async def get_order(self, order_id: int, user_id: int, role: Optional[str]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            order = await load_order(session, order_id)
        if role != ADMIN_ROLE and order.user_id != user_id:
            raise OrderNotFound()
        return serialize_order(order)

    async def list_user_orders(self, user_id: int, status: Optional[str] = None, payment_status: Optional[str] = None,
                               page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> Dict[str, Any]:
        if status:
            status = parse_status(status)
        if payment_status:
            try:
                payment_status = OrderPaymentStatus(payment_status).value
            except ValueError:
                raise ValidationError(f"Unknown payment status {payment_status!r}")
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), MAX_PAGE_LIMIT)

        async with self.session_factory() as session:
            orders, total = await list_orders(session, user_id, status, payment_status, page, limit)
        return {
            "orders": [serialize_order(o) for o in orders],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_remote_status(self, gateway_name: str, correlation_id: str, user_id: int,
                                role: Optional[str]) -> Dict[str, Any]:
        gateway = self.gateways.get(gateway_name)
        async with self.session_factory() as session:
            found = await find_order_by_correlation(session, correlation_id, provider=gateway.name)
        if found is None or (role != ADMIN_ROLE and found["user_id"] != user_id):
            raise NotFound("Payment not found")

        remote = await gateway.fetch_remote_order(correlation_id)
        return {
            "order_id": found["order_id"],
            "correlation_id": correlation_id,
            "status": remote.status,
            "provider_status": remote.provider_status,
            "order_status": found["status"],
            "payment_status": found["payment_status"],
        }
