"""Public storefront endpoints: /api/public/<org_slug>/shop/..."""
from __future__ import annotations

import logging

from flask import Blueprint, request

from app.bizops.db import db_session
from app.bizops.errors import AuthError, ValidationError
from app.bizops.modules.catalog.models import Product
from app.bizops.modules.invoicing.service import notify_paid_effects, notify_payment_received
from app.bizops.tenancy import organization_by_slug
from app.bizops.utils import page_params, paginate, request_payload

from .service import checkout, handle_paystack_event, paystack_secret, verify_signature

logger = logging.getLogger(__name__)

bp = Blueprint("storefront", __name__)


@bp.get("/products")
def shop_products(org_slug: str):
    s = db_session()
    org = organization_by_slug(s, org_slug)
    q = s.query(Product).filter(Product.organization_id == org.id, Product.is_active.is_(True))
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Product.name.ilike(f"%{search}%"))
    page, per_page = page_params(request.args)
    products, meta = paginate(q.order_by(Product.name.asc(), Product.id.asc()), page, per_page)
    return {
        "products": [
            {"id": p.id, "sku": p.sku, "name": p.name, "description": p.description, "unit_price": p.unit_price, "currency": org.currency}
            for p in products
        ],
        "pagination": meta,
    }


@bp.post("/checkout")
def shop_checkout(org_slug: str):
    s = db_session()
    org = organization_by_slug(s, org_slug)
    result = checkout(s, org, request_payload())
    s.commit()
    return {
        "invoice_id": result.invoice.id,
        "order_number": result.order.order_number,
        "total": result.order.total,
        "currency": result.order.currency,
    }, 201


@bp.post("/payment/webhook")
def shop_payment_webhook(org_slug: str):
    s = db_session()
    org = organization_by_slug(s, org_slug)
    raw = request.get_data(cache=True)

    secret = paystack_secret(s, org.id)
    signature = request.headers.get("x-paystack-signature")
    if secret and not (signature and verify_signature(secret, raw, signature)):
        logger.warning("Rejected Paystack webhook for %s: %s signature", org.slug, "bad" if signature else "missing")
        raise AuthError("Invalid signature")

    event = request.get_json(silent=True)
    if not isinstance(event, dict):
        raise ValidationError("Invalid webhook payload")
    outcome = handle_paystack_event(s, org, event)
    s.commit()
    if outcome.status == "processed" and outcome.payment is not None:
        notify_payment_received(s, outcome.payment)
        notify_paid_effects(s, outcome.paid)
        s.commit()
    return {"status": outcome.status, "message": outcome.message}
