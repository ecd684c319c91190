import json
import pytest
import stripe
from flask_jwt_extended import create_access_token

from app import create_app
from extensions import db
from billing.services.stripe_client import object_id
from community.discord import DiscordError


class FakeGateway:
    """In-memory stand-in for StripeGateway; every call is recorded in .calls."""

    def __init__(self):
        self.customers = {}
        self.subscriptions = []
        self.invoices = []
        self.invoice_lines = {}
        self.prices = {}
        self.products = {}
        self.calls = []
        self.fail_with = None

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def call_names(self):
        return [c[0] for c in self.calls]

    # customers
    def find_customer_id(self, user_id):
        self._record("find_customer_id", user_id)
        for c in self.customers.values():
            if (c.get("metadata") or {}).get("userId") == user_id:
                return c["id"]
        return None

    def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id)
        c = self.customers.get(customer_id)
        if c is None or c.get("deleted"):
            return None
        return c

    def iter_customers(self):
        self._record("iter_customers")
        return iter(list(self.customers.values()))

    def ensure_customer_tax_info(self, customer_id):
        self._record("ensure_customer_tax_info", customer_id)
        c = self.customers.get(customer_id)
        if c is None:
            return False
        c.setdefault("metadata", {})["tax_info_configured"] = "true"
        return True

    # subscriptions / invoices
    def list_customer_subscriptions(self, customer_id):
        self._record("list_customer_subscriptions", customer_id)
        return [s for s in self.subscriptions if object_id(s.get("customer")) == customer_id]

    def iter_subscriptions(self):
        self._record("iter_subscriptions")
        return iter(list(self.subscriptions))

    def iter_paid_invoices(self, gte, lte):
        self._record("iter_paid_invoices", gte, lte)
        return iter([i for i in self.invoices if gte <= i["created"] <= lte])

    def list_invoice_lines(self, invoice_id):
        self._record("list_invoice_lines", invoice_id)
        return list(self.invoice_lines.get(invoice_id, []))

    # catalog
    def retrieve_price(self, price_id):
        self._record("retrieve_price", price_id)
        if price_id not in self.prices:
            raise stripe.InvalidRequestError(f"No such price: '{price_id}'", "id")
        price = dict(self.prices[price_id])
        if isinstance(price.get("product"), str) and price["product"] in self.products:
            price["product"] = dict(self.products[price["product"]])
        return price

    def retrieve_product(self, product_id):
        self._record("retrieve_product", product_id)
        if product_id not in self.products:
            raise stripe.InvalidRequestError(f"No such product: '{product_id}'", "id")
        return dict(self.products[product_id])

    # portal / webhooks
    def create_portal_session(self, customer_id, return_url, locale="auto"):
        self._record("create_portal_session", customer_id, return_url, locale)
        return {"url": f"https://billing.example.test/session/{customer_id}"}

    def construct_event(self, payload, sig_header, secret):
        if sig_header != f"valid:{secret}":
            raise ValueError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


class FakeDiscord:
    def __init__(self):
        self.granted = []
        self.revoked = []
        self.messages = []
        self.fail_roles = False
        self.fail_messages = False

    def add_member_role(self, member_id):
        if self.fail_roles:
            raise DiscordError(500, f"/members/{member_id}", "boom")
        self.granted.append(member_id)
        return True

    def remove_member_role(self, member_id):
        if self.fail_roles:
            raise DiscordError(500, f"/members/{member_id}", "boom")
        self.revoked.append(member_id)
        return True

    def post_message(self, content, embeds=None):
        if self.fail_messages:
            raise DiscordError(403, "/channels/ops/messages", "Missing Access")
        self.messages.append(content)
        return True


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def discord():
    return FakeDiscord()


@pytest.fixture
def app(gateway, discord):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "JWT_SECRET_KEY": "test-jwt-secret-key-with-enough-bytes",
            "JWT_COOKIE_CSRF_PROTECT": False,
            "RATELIMIT_ENABLED": False,
            "WTF_CSRF_ENABLED": False,
            "STRIPE_WEBHOOK_SECRET": "whsec_test",
            "STRIPE_REQUIRED_PRICE_ID": None,
            "BILLING_RETRY_DELAY_SECONDS": 0,
        },
        gateway=gateway,
        discord=discord,
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    def make(user_id="user_1", roles=()):
        token = create_access_token(identity=user_id, additional_claims={"org_roles": list(roles)})
        return {"Authorization": f"Bearer {token}"}
    return make
