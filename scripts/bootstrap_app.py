#!/usr/bin/env python3
"""Create an application (tenant) and optionally its OAuth provider credentials.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/bootstrap_app.py --name "Acme"

    # Offer email codes next to authenticator apps:
    python scripts/bootstrap_app.py --name "Acme" --email-two-factor

    # Fixed id, 2FA off, Google credentials for this application only:
    python scripts/bootstrap_app.py --name "Acme" --app-id 6f1c... --no-two-factor \\
        --provider google --client-id ID --client-secret SECRET

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Signing secret (also the default field-encryption key material)
    FIELD_ENCRYPTION_KEY: Key material for encrypting provider client secrets
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_app(args: argparse.Namespace) -> dict:
    """Create the application and return a summary of what was written."""
    # Import here to avoid loading config before the environment is complete
    from tessera.config import get_settings
    from tessera.service.tenancy import parse_app_id
    from tessera.storage.errors import ConstraintViolation
    from tessera.storage.models import OAuthProviderConfig
    from tessera.storage.postgres import PostgresStore

    settings = get_settings()
    app_id = None
    if args.app_id:
        app_id = parse_app_id(args.app_id)
        if app_id is None:
            raise ValueError("--app-id must be a UUID")

    if args.dry_run:
        print(f"[DRY RUN] Would create application {args.name!r} (id: {app_id or 'generated'})")
        return {"app_id": app_id, "status": "dry_run"}

    store = PostgresStore(
        settings.database_url,
        encryption_key=settings.field_encryption_key or settings.jwt_secret,
        timeout_seconds=settings.datastore_timeout_seconds,
    )
    try:
        existing = store.get_application(app_id) if app_id else None
        if existing:
            app = existing
            status = "exists"
        else:
            try:
                app = store.create_application(
                    args.name,
                    app_id=app_id,
                    description=args.description,
                    two_factor_enabled=not args.no_two_factor,
                    two_factor_issuer=args.issuer,
                    two_factor_methods=["totp", "email"] if args.email_two_factor else None,
                    email_two_factor_enabled=args.email_two_factor,
                )
            except ConstraintViolation as exc:
                raise ValueError(str(exc)) from exc
            status = "created"

        if args.provider:
            store.set_oauth_provider_config(
                OAuthProviderConfig(
                    app_id=app.id,
                    provider=args.provider,
                    client_id=args.client_id,
                    client_secret=args.client_secret,
                    redirect_url=args.redirect_url,
                )
            )
        return {"app_id": app.id, "name": app.name, "status": status}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create an application for Tessera",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Display name of the application")
    parser.add_argument("--app-id", help="Fixed application UUID (generated if omitted)")
    parser.add_argument("--description", default="", help="Free-form description")
    parser.add_argument(
        "--no-two-factor",
        action="store_true",
        help="Do not allow users of this application to enroll in 2FA",
    )
    parser.add_argument(
        "--email-two-factor",
        action="store_true",
        help="Also offer codes sent by email as a second factor",
    )
    parser.add_argument("--issuer", help="Issuer label shown in authenticator apps")
    parser.add_argument(
        "--provider", choices=["google", "github", "facebook"], help="OAuth provider to configure"
    )
    parser.add_argument("--client-id", help="OAuth client id for --provider")
    parser.add_argument("--client-secret", help="OAuth client secret for --provider")
    parser.add_argument("--redirect-url", help="OAuth redirect URL for --provider")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.provider and not (args.client_id and args.client_secret):
        print("Error: --provider requires --client-id and --client-secret")
        sys.exit(1)

    try:
        result = bootstrap_app(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nApplication created successfully!")
        print(f"  Name: {result['name']}")
        print(f"  App ID: {result['app_id']}")
    elif result["status"] == "exists":
        print(f"\nApplication {result['app_id']} already exists; nothing created.")


if __name__ == "__main__":
    main()
