"""Order email templates.

Rendering is pure: no I/O and no wall clock. The footer year comes from the
order's ``created_at`` so identical inputs always give byte-identical output.
All order data goes through Jinja2 autoescaping.
"""
from typing import Dict, List, Optional

from jinja2 import DictLoader, Environment, StrictUndefined
from pydantic import BaseModel

from shared.config import Settings
from shared.schemas import ORDER_STATUS_LABEL, ContactBlock, OrderSnapshot

from .kinds import NotificationKind, NotificationParams

STYLES: Dict[str, str] = {
    "wrapper": "margin:0;padding:0;background:#f6f8fa;font-family:Segoe UI,Roboto,Helvetica,Arial,sans-serif;color:#111",
    "container": "max-width:640px;margin:0 auto;padding:24px",
    "card": "background:#ffffff;border-radius:10px;box-shadow:0 1px 3px rgba(0,0,0,0.06);padding:24px",
    "brand": "font-size:24px;font-weight:800;color:#e11d48",
    "h1": "font-size:22px;margin:0 0 12px;color:#111",
    "p": "font-size:14px;line-height:1.6;margin:0 0 10px;color:#333",
    "small": "color:#6b7280;font-size:12px",
    "table": "width:100%;border-collapse:collapse;margin-top:12px",
    "th": "text-align:left;border-bottom:1px solid #e5e7eb;padding:8px;font-size:13px;color:#374151",
    "td": "border-bottom:1px solid #f3f4f6;padding:8px;font-size:13px;color:#111;vertical-align:top",
    "num": "border-bottom:1px solid #f3f4f6;padding:8px;font-size:13px;color:#111;text-align:right",
    "img": "width:56px;height:56px;border-radius:6px;object-fit:cover;border:1px solid #eee",
    "btn": "display:inline-block;background:#111;color:#fff;text-decoration:none;padding:10px 16px;border-radius:6px;font-weight:600",
    "footer": "margin-top:24px;border-top:1px solid #e5e7eb;padding-top:12px;color:#6b7280;font-size:12px",
}

BASE = """\
<div style="{{ styles.wrapper }}">
  <div style="{{ styles.container }}">
    <div style="text-align:center;margin-bottom:16px">
{% if logo_url %}
      <img src="{{ logo_url }}" alt="{{ brand }}" style="height:40px"/>
{% else %}
      <div style="{{ styles.brand }}">{{ brand }}</div>
{% endif %}
    </div>
    <div style="{{ styles.card }}">
      <h1 style="{{ styles.h1 }}">{{ title }}</h1>
      <p style="{{ styles.small }}">Order status: {{ status_label }}</p>
{% block body %}{% endblock %}
{% if cta_href %}
      <div style="margin-top:16px"><a href="{{ cta_href }}" style="{{ styles.btn }}">{{ cta_label }}</a></div>
{% endif %}
      <div style="{{ styles.footer }}">
        <div>Need help? Email {{ support_email }}</div>
        <div>&copy; {{ year }} {{ brand }}</div>
      </div>
    </div>
  </div>
</div>
"""

CONFIRMATION = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Order <b>#{{ order.order_number }}</b> has been confirmed.</p>
{% if estimated_delivery %}
      <p style="{{ styles.p }}">Estimated delivery: <b>{{ estimated_delivery }}</b></p>
{% endif %}
{% if order.notes %}
      <p style="{{ styles.p }}">Order note: {{ order.notes }}</p>
{% endif %}
      <table style="{{ styles.table }}">
        <tr><th style="{{ styles.th }}">Item</th><th style="{{ styles.th }}">Details</th><th style="{{ styles.th }}">Qty</th><th style="{{ styles.th }}">Price</th></tr>
{% for item in items %}
        <tr>
          <td style="{{ styles.td }}">{% if item.image %}<img src="{{ item.image }}" alt="{{ item.name }}" style="{{ styles.img }}"/>{% endif %}</td>
          <td style="{{ styles.td }}"><div style="font-weight:600">{{ item.name }}</div><div style="{{ styles.small }}">Size: {{ item.size or "-" }} &bull; Color: {{ item.color or "-" }}</div></td>
          <td style="{{ styles.td }}">x{{ item.quantity }}</td>
          <td style="{{ styles.td }}">{{ item.price | money }}</td>
        </tr>
{% endfor %}
      </table>
      <table style="{{ styles.table }}">
        <tr><th style="{{ styles.th }}">Shipping Address</th><th style="{{ styles.th }}">Billing Address</th></tr>
        <tr>
          <td style="{{ styles.td }}">{% for line in shipping_lines %}{{ line }}{% if not loop.last %}<br/>{% endif %}{% endfor %}</td>
          <td style="{{ styles.td }}">{% for line in billing_lines %}{{ line }}{% if not loop.last %}<br/>{% endif %}{% endfor %}</td>
        </tr>
      </table>
      <table style="{{ styles.table }}">
        <tr><td style="{{ styles.td }}">Subtotal</td><td style="{{ styles.num }}">{{ order.subtotal | money }}</td></tr>
        <tr><td style="{{ styles.td }}">Shipping</td><td style="{{ styles.num }}">{{ order.shipping_cost | money }}</td></tr>
        <tr><td style="{{ styles.td }}">Tax</td><td style="{{ styles.num }}">{{ order.tax | money }}</td></tr>
        <tr><td style="{{ styles.td }};font-weight:700">Total</td><td style="{{ styles.num }};font-weight:700">{{ order.total_amount | money }}</td></tr>
      </table>
{% endblock %}
"""

PROCESSING = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">We're preparing your order <b>#{{ order.order_number }}</b>.</p>
      <p style="{{ styles.p }}">We typically ship within 24 hours.</p>
{% endblock %}
"""

PACKED = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Your order <b>#{{ order.order_number }}</b> is packed and waiting for the courier.</p>
{% endblock %}
"""

SHIPPED = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Your order <b>#{{ order.order_number }}</b> has shipped.</p>
{% if tracking_number %}
      <p style="{{ styles.p }}">Tracking: <b>{{ tracking_number }}</b>{% if courier %} (via {{ courier }}){% endif %}</p>
{% endif %}
{% if estimated_delivery %}
      <p style="{{ styles.p }}">Expected delivery: <b>{{ estimated_delivery }}</b></p>
{% endif %}
{% endblock %}
"""

OUT_FOR_DELIVERY = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Your order <b>#{{ order.order_number }}</b> is out for delivery.</p>
{% if window_text %}
      <p style="{{ styles.p }}">Expected delivery window: <b>{{ window_text }}</b></p>
{% endif %}
{% endblock %}
"""

DELIVERED = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Your order <b>#{{ order.order_number }}</b> was delivered. We hope you love it!</p>
      <p style="{{ styles.p }}">Please consider leaving a review for your items.</p>
{% endblock %}
"""

CANCELLED = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">Your order <b>#{{ order.order_number }}</b> has been cancelled.</p>
      <p style="{{ styles.p }}">If this wasn't expected, contact us at {{ support_email }}.</p>
{% endblock %}
"""

FOLLOW_UP = """\
{% extends "base.html" %}
{% block body %}
      <p style="{{ styles.p }}">How was your experience with order <b>#{{ order.order_number }}</b>?</p>
      <p style="{{ styles.p }}">Here are some care tips and recommendations curated for you.</p>
{% endblock %}
"""

TEMPLATE_SOURCES: Dict[str, str] = {
    "base.html": BASE,
    "confirmation.html": CONFIRMATION,
    "processing.html": PROCESSING,
    "packed.html": PACKED,
    "shipped.html": SHIPPED,
    "out_for_delivery.html": OUT_FOR_DELIVERY,
    "delivered.html": DELIVERED,
    "cancelled.html": CANCELLED,
    "follow_up.html": FOLLOW_UP,
}

KIND_TEMPLATE: Dict[NotificationKind, str] = {
    NotificationKind.CONFIRMED: "confirmation.html",
    NotificationKind.CONFIRMED_RETRY: "confirmation.html",
    NotificationKind.PROCESSING: "processing.html",
    NotificationKind.PACKED: "packed.html",
    NotificationKind.SHIPPED: "shipped.html",
    NotificationKind.OUT_FOR_DELIVERY: "out_for_delivery.html",
    NotificationKind.DELIVERED: "delivered.html",
    NotificationKind.CANCELLED: "cancelled.html",
    NotificationKind.FOLLOW_UP: "follow_up.html",
}

# Kinds whose call-to-action points at the order tracking page.
TRACKING_CTA: Dict[NotificationKind, str] = {
    NotificationKind.CONFIRMED: "Track your order",
    NotificationKind.CONFIRMED_RETRY: "Track your order",
    NotificationKind.SHIPPED: "Track package",
    NotificationKind.FOLLOW_UP: "View your orders",
}

if set(KIND_TEMPLATE) != set(NotificationKind):
    raise RuntimeError("KIND_TEMPLATE must cover every NotificationKind")


def status_email_subject(kind: NotificationKind, order_number: str, brand: str = "CalistaLife") -> str:
    """Subject line for a notification kind."""
    subjects = {
        NotificationKind.CONFIRMED: f"Order Confirmed - Your {brand} Order #{order_number}",
        NotificationKind.CONFIRMED_RETRY: f"Order Confirmed - Your {brand} Order #{order_number}",
        NotificationKind.PROCESSING: f"We're preparing your order #{order_number}",
        NotificationKind.PACKED: f"Your order #{order_number} is packed",
        NotificationKind.SHIPPED: f"Your {brand} order #{order_number} has shipped!",
        NotificationKind.OUT_FOR_DELIVERY: f"Your order #{order_number} is out for delivery today",
        NotificationKind.DELIVERED: f"Your {brand} order #{order_number} has been delivered",
        NotificationKind.CANCELLED: f"Your order #{order_number} has been cancelled",
        NotificationKind.FOLLOW_UP: f"How was your {brand} experience?",
    }
    return subjects[kind]


def format_money(value: Optional[float]) -> str:
    return f"₹{(value or 0.0):.2f}"


def address_lines(block: Optional[ContactBlock]) -> List[str]:
    """Non-empty address lines of a contact block, in mailing order."""
    if block is None:
        return []
    locality = " ".join(part for part in (block.city, block.state, block.zip) if part)
    lines = [block.name, block.address1, block.address2, locality, block.country, block.phone]
    return [line for line in lines if line]


class RenderedMessage(BaseModel):
    """Subject plus HTML body of one email."""
    subject: str
    html: str


class TemplateRenderer:
    """Maps (kind, order, params) to a rendered email."""

    def __init__(
        self,
        storefront_url: str,
        brand_name: str = "CalistaLife",
        logo_url: Optional[str] = None,
        support_email: str = "support@calistalife.com",
    ):
        self.storefront_url = storefront_url.rstrip("/")
        self.brand_name = brand_name
        self.logo_url = logo_url
        self.support_email = support_email
        self.env = Environment(
            loader=DictLoader(TEMPLATE_SOURCES),
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self.env.filters["money"] = format_money

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemplateRenderer":
        return cls(
            storefront_url=settings.storefront_url,
            brand_name=settings.brand_name,
            logo_url=settings.logo_url,
            support_email=settings.support_email,
        )

    @property
    def orders_url(self) -> str:
        """Default tracking link."""
        return f"{self.storefront_url}/orders"

    def subject(self, kind: NotificationKind, order_number: str) -> str:
        return status_email_subject(kind, order_number, self.brand_name)

    def render(
        self,
        kind: NotificationKind,
        order: OrderSnapshot,
        params: Optional[NotificationParams] = None,
    ) -> RenderedMessage:
        """Render subject and HTML body for one notification."""
        params = params or NotificationParams()
        subject = self.subject(kind, order.order_number)

        cta_href = None
        if kind in TRACKING_CTA:
            cta_href = self.orders_url
            if kind is not NotificationKind.FOLLOW_UP:
                cta_href = params.track_url or order.track_url or self.orders_url

        estimated_delivery = params.estimated_delivery or order.estimated_delivery
        billing = order.billing_address or order.shipping_address
        context = {
            "styles": STYLES,
            "brand": self.brand_name,
            "logo_url": self.logo_url,
            "support_email": self.support_email,
            "year": order.created_at.year,
            "title": subject,
            "status_label": ORDER_STATUS_LABEL[order.order_status],
            "cta_href": cta_href,
            "cta_label": TRACKING_CTA.get(kind, ""),
            "order": order,
            "items": params.items if params.items is not None else order.items,
            "shipping_lines": address_lines(order.shipping_address),
            "billing_lines": address_lines(billing),
            "tracking_number": params.tracking_number or order.tracking_number,
            "courier": params.courier or order.courier,
            "estimated_delivery": estimated_delivery.strftime("%d %b %Y") if estimated_delivery else None,
            "window_text": params.window_text,
        }
        html = self.env.get_template(KIND_TEMPLATE[kind]).render(context)
        return RenderedMessage(subject=subject, html=html)
