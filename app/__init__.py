import os
import logging

import click
from flask import Flask, jsonify

from app.config import config_by_name
from app.extensions import db, migrate, limiter, storage_configured


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
    # Without a database URL the app still serves webhooks (acknowledged,
    # then dropped with an error log) and zeroed dashboard reads.
    if app.config.get("SQLALCHEMY_DATABASE_URI"):
        db.init_app(app)
        migrate.init_app(app, db)
    else:
        app.logger.warning("DATABASE_URL not set — sale storage is disabled")
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.dashboard import dashboard_bp
    from app.blueprints.cron import cron_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(cron_bp)

    # --- Root route ---
    @app.route("/")
    def index():
        """Service identification for uptime checks."""
        return jsonify({
            "service": "sales-monitor",
            "status": "ok",
            "webhook": "/webhook",
        })

    # --- Error handlers ---
    # JSON only, generic messages; details stay in the server log.
    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "Bad request"}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

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
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing here loads sub-resources
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
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

    @app.cli.command("sync-purchases")
    @click.option("--max-pages", type=int, default=None,
                  help="Stop after this many pages (default SYNC_MAX_PAGES).")
    @click.option("--limit", type=int, default=None,
                  help="Purchases per page (default SYNC_PAGE_SIZE).")
    def sync_purchases_cmd(max_pages, limit):
        """Pull purchases from the platform API and upsert them.

        Usage:
            flask sync-purchases
            flask sync-purchases --max-pages 20
        """
        from app.exceptions import ConfigurationMissing, DigistoreApiError
        from app.services.sync_service import run_sync

        try:
            result = run_sync(app.config, limit=limit, max_pages=max_pages)
        except (ConfigurationMissing, DigistoreApiError) as e:
            raise click.ClickException(str(e))

        click.echo("")
        click.echo("=" * 60)
        click.echo("Purchase sync complete")
        click.echo("=" * 60)
        click.echo(f"  Pages:      {result.pages}")
        click.echo(f"  Fetched:    {result.fetched}")
        click.echo(f"  Synced:     {result.synced}")
        click.echo(f"  Failed:     {result.failed}")
        click.echo(f"  Affiliates: {len(result.affiliates)}")
        click.echo("=" * 60)

    @app.cli.command("send-daily-report")
    def send_daily_report_cmd():
        """Summarize yesterday's completed sales and notify the owner."""
        from app.exceptions import ConfigurationMissing
        from app.services.sync_service import run_daily_report

        try:
            report = run_daily_report(app.config)
        except ConfigurationMissing as e:
            raise click.ClickException(str(e))

        click.echo(
            f"Report for {report.label}: {report.total_sales} sales, "
            f"{report.total_revenue:.2f} revenue"
        )

    @app.cli.command("recompute-affiliates")
    def recompute_affiliates_cmd():
        """Rebuild every affiliate's totals from the sales table.

        Covers affiliates that have sales but no affiliate row yet.
        """
        from app.exceptions import DerivedStateFailure
        from app.models.affiliate import Affiliate
        from app.models.sale import Sale
        from app.services.stores import AffiliateStore, commission_rate_from

        if not storage_configured(app):
            raise click.ClickException("DATABASE_URL is not configured")

        rate = commission_rate_from(app.config)
        store = AffiliateStore()

        ids = {row[0] for row in db.session.query(Affiliate.affiliate_id)}
        ids |= {
            row[0]
            for row in db.session.query(Sale.affiliate_id).filter(
                Sale.affiliate_id.isnot(None), Sale.affiliate_id != ""
            ).distinct()
        }

        failed = 0
        for affiliate_id in sorted(ids):
            try:
                store.recompute(affiliate_id, rate)
            except DerivedStateFailure as e:
                failed += 1
                click.echo(f"  {affiliate_id}: ERROR {e}")

        click.echo(f"Recomputed {len(ids) - failed} of {len(ids)} affiliates.")
