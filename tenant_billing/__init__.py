import os
import logging

import click
import stripe
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from tenant_billing.config import config_by_name
from tenant_billing.errors import BillingError, UpstreamError
from tenant_billing.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from tenant_billing import models  # noqa: F401

    # --- Register blueprints ---
    from tenant_billing.blueprints.auth import auth_bp
    from tenant_billing.blueprints.plans import plans_bp
    from tenant_billing.blueprints.subscriptions import subscriptions_bp
    from tenant_billing.blueprints.payment_methods import payment_methods_bp
    from tenant_billing.blueprints.transactions import transactions_bp
    from tenant_billing.blueprints.webhooks import webhooks_bp
    from tenant_billing.blueprints.tenants import tenants_bp
    from tenant_billing.blueprints.tenant import tenant_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(plans_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(payment_methods_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(tenants_bp)
    app.register_blueprint(tenant_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(BillingError)
    def billing_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(stripe.StripeError)
    def stripe_error(e):
        db.session.rollback()
        app.logger.error(f"Unhandled Stripe error: {e}")
        err = UpstreamError(
            f"Payment processor error: {getattr(e, 'user_message', None) or e}"
        )
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "success": False,
            "message": "Resource not found.",
            "code": "NOT_FOUND",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "success": False,
            "message": "Method not allowed.",
            "code": "METHOD_NOT_ALLOWED",
        }), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({
            "success": False,
            "message": "Too many requests. Please try again later.",
            "code": "RATE_LIMITED",
        }), 429

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify({
            "success": False,
            "message": "Internal server error.",
            "code": "INTERNAL_ERROR",
        }), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing to load, nothing to frame
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Billing responses must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@billing.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the super admin who operates the billing console.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from tenant_billing.models.user import User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            if not existing.is_super_admin:
                existing.is_super_admin = True
                db.session.commit()
                click.echo(f"Promoted existing user to super admin: {email}")
            else:
                click.echo(f"Super admin already exists: {email}")
            return

        db.session.add(User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Super Admin",
            is_super_admin=True,
        ))
        db.session.commit()
        click.echo(f"Created super admin: {email}")

    @app.cli.command("create-tenant")
    @click.option("--name", required=True, help="Tenant display name")
    @click.option("--slug", required=True, help="Unique tenant slug")
    @click.option("--email", default=None, help="Billing contact email")
    @click.option("--clinic", "clinic_name", default=None, help="First clinic name")
    def create_tenant(name, slug, email, clinic_name):
        """Create a tenant (plus a first clinic) and seed its permissions.

        Usage:
            flask create-tenant --name "Acme Health" --slug acme
        """
        from tenant_billing.models.tenant import Clinic, Tenant
        from tenant_billing.services.permission_service import ensure_tenant_permissions

        slug = slug.lower().strip()
        if Tenant.query.filter_by(slug=slug).first():
            click.echo(f"ERROR: tenant slug already taken: {slug}")
            return

        tenant = Tenant(name=name, slug=slug, email=email)
        db.session.add(tenant)
        db.session.flush()
        db.session.add(Clinic(tenant_id=tenant.id, name=clinic_name or name))
        result = ensure_tenant_permissions(tenant.id)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Tenant created!")
        click.echo("=" * 60)
        click.echo(f"  Tenant:      {tenant.name} (id: {tenant.id})")
        click.echo(f"  Permissions: {result['permissions_created']} created")
        click.echo(f"  Roles:       {result['roles_created']} created")
        click.echo("=" * 60)

    @app.cli.command("seed-permissions")
    @click.option("--tenant", "tenant_ids", multiple=True, help="Limit to these tenant ids")
    @click.option("--skip-migration", is_flag=True, help="Don't migrate legacy user roles.")
    def seed_permissions(tenant_ids, skip_migration):
        """Seed the permission catalog and default roles for tenants.

        Usage:
            flask seed-permissions
            flask seed-permissions --tenant <id> --tenant <id>
        """
        from tenant_billing.models.tenant import Tenant
        from tenant_billing.services import permission_service

        try:
            if skip_migration:
                ids = list(tenant_ids) or [t.id for t in Tenant.query.all()]
                result = permission_service.ensure_multiple_tenant_permissions(ids)
                db.session.commit()
                click.echo(
                    f"Permissions: {result['permissions_created']} created, "
                    f"{result['permissions_updated']} updated"
                )
                click.echo(
                    f"Roles: {result['roles_created']} created, "
                    f"{result['roles_updated']} updated"
                )
                return

            query = Tenant.query
            if tenant_ids:
                query = query.filter(Tenant.id.in_(tenant_ids))
            report = permission_service.seed_permission_system(query.all())
            db.session.commit()
        except BillingError as e:
            db.session.rollback()
            click.echo(f"ERROR: {e.message}")
            return

        perms, roles, migration = report["permissions"], report["roles"], report["migration"]
        click.echo(f"Permissions: {perms['created']} created, {perms['updated']} updated ({perms['total']} total)")
        click.echo(f"Roles: {roles['created']} created, {roles['updated']} updated, {roles['grants_added']} grants added")
        click.echo(f"Users: {migration['migrated']} migrated, {migration['skipped']} skipped")

    @app.cli.command("migrate-user-roles")
    def migrate_user_roles():
        """Move legacy single-role user-clinic links onto tenant roles."""
        from tenant_billing.services.permission_service import migrate_user_roles as run

        result = run()
        db.session.commit()
        click.echo(f"Migrated {result['migrated']} user clinic links, skipped {result['skipped']}")

    @app.cli.command("sync-plans")
    def sync_plans():
        """Pull active Stripe products/prices into local plans."""
        from tenant_billing.services.plan_service import sync_plans_from_stripe

        report = sync_plans_from_stripe()
        db.session.commit()
        click.echo(
            f"Synced {report['synced_count']} plans "
            f"({report['created_count']} created, {report['updated_count']} updated)"
        )
        for error in report["errors"]:
            click.echo(f"  ERROR: {error}")

    @app.cli.command("sync-transactions")
    def sync_transactions():
        """Backfill recent Stripe payment intents into the ledger."""
        from tenant_billing.services.transaction_service import sync_transactions_from_stripe

        report = sync_transactions_from_stripe()
        db.session.commit()
        click.echo(
            f"Synced {report['synced_count']} of {report['total_processed']} transactions "
            f"({report['skipped_count']} skipped)"
        )
        for error in report["errors"]:
            click.echo(f"  ERROR: {error}")
