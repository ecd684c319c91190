import time
from dataclasses import dataclass
import click
from flask import Blueprint, current_app

from community.discord import DiscordClient
from .services.stripe_client import StripeGateway

billing_bp = Blueprint("billing_bp", __name__, url_prefix="/billing", cli_group="billing")

billing_webhooks_bp = Blueprint("billing_webhooks_bp", __name__, url_prefix="/billing/webhook")


@dataclass
class BillingServices:
    gateway: StripeGateway
    discord: DiscordClient


def init_billing(app, *, gateway=None, discord=None) -> BillingServices:
    """
    Build the provider gateway and Discord client once per app and park them
    on app.extensions["billing"]. Tests pass fakes through the keyword args.
    """
    cfg = app.config
    services = BillingServices(
        gateway=gateway or StripeGateway(
            cfg.get("STRIPE_SECRET_KEY"),
            max_network_retries=int(cfg.get("STRIPE_MAX_NETWORK_RETRIES", 2)),
        ),
        discord=discord or DiscordClient(
            cfg.get("DISCORD_BOT_TOKEN"),
            guild_id=cfg.get("DISCORD_GUILD_ID"),
            member_role_id=cfg.get("DISCORD_MEMBER_ROLE_ID"),
            ops_channel_id=cfg.get("DISCORD_OPS_CHANNEL_ID"),
        ),
    )
    app.extensions["billing"] = services
    if not cfg.get("STRIPE_SECRET_KEY"):
        app.logger.warning("[billing] STRIPE_SECRET_KEY not set; provider calls will fail")
    return services


def billing_services() -> BillingServices:
    return current_app.extensions["billing"]


def snapshot_cache():
    from .services.snapshot import SnapshotCache

    cfg = current_app.config
    return SnapshotCache(
        billing_services().gateway,
        required_price_id=cfg.get("STRIPE_REQUIRED_PRICE_ID"),
        retry_delay=float(cfg.get("BILLING_RETRY_DELAY_SECONDS", 1.0)),
    )


@billing_bp.cli.command("backfill-tax-info")
@click.option("--dry", is_flag=True, help="List customers only; do not update")
@click.option("--delay", default=0.1, show_default=True, help="Seconds to wait between updates")
def backfill_tax_info(dry: bool, delay: float):
    """
    Ensure every customer carries the tax/invoice metadata.
    Usage:
        flask billing backfill-tax-info --dry
        flask billing backfill-tax-info
    """
    gateway = billing_services().gateway
    total = pending = updated = failed = 0
    for customer in gateway.iter_customers():
        total += 1
        if (customer.get("metadata") or {}).get("tax_info_configured") == "true":
            continue
        pending += 1
        if dry:
            click.echo(f"would update {customer.get('id')} ({customer.get('email') or '-'})")
            continue
        try:
            gateway.ensure_customer_tax_info(customer["id"])
            updated += 1
        except Exception as e:
            failed += 1
            current_app.logger.exception("[billing] backfill failed for %s", customer.get("id"))
            click.echo(f"failed {customer.get('id')}: {e}", err=True)
        if delay:
            time.sleep(delay)

    click.echo(f"customers={total} pending={pending} updated={updated} failed={failed}{' (dry run)' if dry else ''}")


@billing_bp.cli.command("resync")
@click.argument("user_id")
def resync(user_id: str):
    """Pull one user's subscription from the provider and overwrite the local snapshot."""
    result = snapshot_cache().resolve(user_id, retry_count=0, is_post_checkout=True)
    details = result.details.to_dict() if result.details else {}
    click.echo(f"user={user_id} hasAccess={result.has_access} status={details.get('status', 'none')}")


from . import routes, webhooks
