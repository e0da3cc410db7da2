import json
import click
from flask.cli import with_appcontext
from carousel_billing.billing.entitlements import resolve_entitlement
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.billing.plans import DEFAULT_PLANS, PLAN_ORDER
from carousel_billing.extensions import db
from carousel_billing.models import Plan, User, UserRole
from carousel_billing.models.plan import CURRENCIES
from carousel_billing.models.user import ROLE_CHOICES
from carousel_billing.services import tokens
from carousel_billing.services.grants import GrantError, grant_plan, revoke_grant
from carousel_billing.utils.validators import normalize_email


def _user_by_email(email: str) -> User:
    user = db.session.query(User).filter_by(email=normalize_email(email)).one_or_none()
    if not user:
        raise click.ClickException("User not found")
    return user


@click.group()
def users():
    """User management."""

@users.command("create")
@click.option("--email", required=True)
@with_appcontext
def users_create(email):
    email = normalize_email(email)
    if not email:
        raise click.ClickException("Invalid email")
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")
    user = User(email=email, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"User created id={user.id} email={user.email}")

@users.command("token")
@click.option("--email", required=True)
@with_appcontext
def users_token(email):
    """Issue a bearer token for API calls."""
    user = _user_by_email(email)
    click.echo(tokens.generate(user.id))


@click.group()
def roles():
    """Role ops."""

@roles.command("grant")
@click.option("--email", required=True)
@click.option("--role", type=click.Choice(ROLE_CHOICES), required=True)
@with_appcontext
def roles_grant(email, role):
    user = _user_by_email(email)
    if not db.session.query(UserRole).filter_by(user_id=user.id, role=role).count():
        db.session.add(UserRole(user_id=user.id, role=role))
        db.session.commit()
    click.echo(f"Granted {role} to {user.email}")

@roles.command("revoke")
@click.option("--email", required=True)
@click.option("--role", type=click.Choice(ROLE_CHOICES), required=True)
@with_appcontext
def roles_revoke(email, role):
    user = _user_by_email(email)
    m = db.session.query(UserRole).filter_by(user_id=user.id, role=role).one_or_none()
    if not m:
        raise click.ClickException("Role not found")
    db.session.delete(m)
    db.session.commit()
    click.echo(f"Revoked {role} from {user.email}")


@click.group()
def plans():
    """Plan catalog."""

@plans.command("seed")
@click.option("--price", "prices", multiple=True, help="tier:currency:price_id (repeatable)")
@with_appcontext
def plans_seed(prices):
    """Insert the default plans that are missing; optionally attach provider price ids."""
    extra = {}
    for value in prices:
        parts = value.split(":")
        if len(parts) != 3 or parts[0] not in DEFAULT_PLANS or parts[1].lower() not in CURRENCIES:
            raise click.ClickException(f"Bad --price value: {value}")
        extra.setdefault(parts[0], {})[parts[1].lower()] = parts[2]

    created = 0
    for order, tier in enumerate(PLAN_ORDER):
        definition = DEFAULT_PLANS[tier]
        plan = db.session.query(Plan).filter_by(tier=tier, is_active=True).one_or_none()
        if plan is None:
            plan = Plan(
                tier=tier,
                name=definition.name or tier.title(),
                daily_limit=definition.daily_limit,
                limit_period=definition.limit_period,
                has_watermark=definition.has_watermark,
                has_editor=definition.has_editor,
                has_history=definition.has_history,
                external_price_ids={},
                is_active=True,
                display_order=order,
            )
            db.session.add(plan)
            created += 1
        if tier in extra:
            plan.external_price_ids = {**(plan.external_price_ids or {}), **extra[tier]}
    db.session.commit()
    click.echo(f"Plans seeded: created={created}")

@plans.command("list")
@with_appcontext
def plans_list():
    rows = db.session.query(Plan).order_by(Plan.display_order, Plan.id).all()
    for p in rows:
        flag = "" if p.is_active else " (inactive)"
        click.echo(
            f"{p.tier}: {p.daily_limit}/{p.limit_period} watermark={p.has_watermark} "
            f"prices={json.dumps(p.external_price_ids or {}, sort_keys=True)}{flag}"
        )


@click.group()
def grants():
    """Manual plan grants."""

@grants.command("create")
@click.option("--email", required=True)
@click.option("--tier", required=True)
@click.option("--daily-limit", type=int, default=None)
@click.option("--days", type=int, default=None, help="Expire after N days (default: never)")
@click.option("--granted-by", required=True)
@click.option("--reason", default=None)
@with_appcontext
def grants_create(email, tier, daily_limit, days, granted_by, reason):
    user = _user_by_email(email)
    try:
        grant = grant_plan(
            user_id=user.id,
            tier=tier.strip().lower(),
            granted_by=granted_by,
            custom_daily_limit=daily_limit,
            days=days,
            reason=reason,
        )
    except GrantError as e:
        db.session.rollback()
        raise click.ClickException(str(e))
    db.session.commit()
    expires = grant.expires_at.isoformat() if grant.expires_at else "never"
    click.echo(f"Granted {grant.tier} to {user.email} (expires {expires})")

@grants.command("revoke")
@click.option("--email", required=True)
@with_appcontext
def grants_revoke(email):
    user = _user_by_email(email)
    if not revoke_grant(user.id):
        raise click.ClickException("No active grant")
    db.session.commit()
    click.echo(f"Revoked grant for {user.email}")


@click.group()
def entitlement():
    """Entitlement inspection."""

@entitlement.command("show")
@click.option("--email", required=True)
@with_appcontext
def entitlement_show(email):
    user = _user_by_email(email)
    try:
        ent = resolve_entitlement(user.id)
    except EntitlementUnavailable as e:
        raise click.ClickException(f"Entitlement unavailable: {e}")
    click.echo(json.dumps(ent.to_dict(), sort_keys=True))


def register_cli(app):
    app.cli.add_command(users)
    app.cli.add_command(roles)
    app.cli.add_command(plans)
    app.cli.add_command(grants)
    app.cli.add_command(entitlement)
