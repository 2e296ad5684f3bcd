"""Command line interface for licensor.

Examples::

    licensor keys generate acme-cad
    licensor generate --type volumetric --product acme-cad --consumer c-42 \\
        --max-users 25 --feature Export --by alice --out license.json
    licensor validate license.json --json
    licensor audit --product acme-cad
"""

from __future__ import annotations

import copy
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import click

from licensor import __version__
from licensor.cli.output import (
    format_audit_rows,
    format_error,
    format_license_entity,
    format_response,
    format_validation_result,
)
from licensor.config import LicensorConfig, load_config
from licensor.crypto import compute_thumbprint
from licensor.generation import (
    GenerationRequestError,
    LicenseGenerationFactory,
    LicenseGenerationRequest,
    LicenseType,
)
from licensor.generation.base import FEATURE_METADATA_PREFIX
from licensor.generator import LicenseGenerator
from licensor.keys import FileKeyStore, KeyStoreError
from licensor.log_config import configure_logging
from licensor.models import ensure_utc
from licensor.persistence import LicensorDB
from licensor.validation import LicenseValidationService

logger = logging.getLogger(__name__)

_TYPE_NAMES = {
    "product-key": LicenseType.PRODUCT_KEY,
    "license-file": LicenseType.PRODUCT_LICENSE_FILE,
    "volumetric": LicenseType.VOLUMETRIC_LICENSE,
}


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


def _config(ctx: click.Context) -> LicensorConfig:
    return ctx.obj["config"]


def _key_store(ctx: click.Context, key_size: Optional[int] = None) -> FileKeyStore:
    cfg = _config(ctx)
    return FileKeyStore(
        cfg.key_store.path,
        key_size=key_size or cfg.key_store.key_size,
        passphrase=cfg.key_store.passphrase(),
    )


def _db(ctx: click.Context) -> LicensorDB:
    db = ctx.obj.get("db")
    if db is None:
        db = LicensorDB(_config(ctx).db_path)
        ctx.obj["db"] = db
        ctx.call_on_close(db.close)
    return db


def _fail(message: str, code: str, json_mode: bool) -> None:
    click.echo(format_error(message, code=code, json_mode=json_mode))
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="LICENSOR_CONFIG",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.yaml (default ~/.licensor/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level.")
@click.version_option(version=__version__, prog_name="licensor")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool) -> None:
    """Licensor: issue and validate signed software licenses."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    try:
        configure_logging(cfg.log_dir, level="DEBUG" if verbose else cfg.log_level)
    except OSError as exc:
        click.echo(click.style(f"  Note: file logging disabled ({exc})", fg="yellow"), err=True)


# ---------------------------------------------------------------------------
# keys
# ---------------------------------------------------------------------------


@cli.group()
def keys() -> None:
    """Manage per-product RSA key pairs."""


@keys.command("generate")
@click.argument("product_id")
@click.option("--key-size", type=int, default=None, help="RSA key size in bits (default from config).")
@click.option("--force", is_flag=True, help="Replace an existing key pair.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def keys_generate(
    ctx: click.Context, product_id: str, key_size: Optional[int], force: bool, json_mode: bool
) -> None:
    """Generate and store a key pair for PRODUCT_ID."""
    try:
        store = _key_store(ctx, key_size)
        if not force and store.has_valid_keys(product_id):
            _fail(
                f"Product {product_id!r} already has a key pair. Use --force to replace it.",
                "KEYS_EXIST",
                json_mode,
            )
        public_key = store.generate_key_pair_for_product(product_id)
    except (ValueError, KeyStoreError) as exc:
        _fail(str(exc), getattr(exc, "code", None) or "KEY_ERROR", json_mode)
        return
    click.echo(format_response(
        "success",
        data={
            "product_id": product_id,
            "thumbprint": compute_thumbprint(public_key),
            "public_key_path": str(store.public_key_path(product_id)),
            "private_key_path": str(store.private_key_path(product_id)),
        },
        json_mode=json_mode,
    ))


@keys.command("show")
@click.argument("product_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def keys_show(ctx: click.Context, product_id: str, json_mode: bool) -> None:
    """Print the public key for PRODUCT_ID."""
    try:
        public_key = _key_store(ctx).get_public_key(product_id)
    except (ValueError, KeyStoreError) as exc:
        _fail(str(exc), getattr(exc, "code", None) or "KEY_ERROR", json_mode)
        return
    if public_key is None:
        _fail(
            f"No key pair for product {product_id!r}. Run 'licensor keys generate {product_id}'.",
            "KEY_NOT_FOUND",
            json_mode,
        )
    if json_mode:
        click.echo(format_response(
            "success",
            data={"product_id": product_id, "thumbprint": compute_thumbprint(public_key), "public_key": public_key},
            json_mode=True,
        ))
    else:
        click.echo(public_key.rstrip("\n"))


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--type", "license_type", required=True, type=click.Choice(sorted(_TYPE_NAMES)),
              help="License model to issue.")
@click.option("--product", "product_id", required=True, help="Product id.")
@click.option("--consumer", "consumer_id", required=True, help="Consumer id.")
@click.option("--product-name", default="", help="Product display name.")
@click.option("--consumer-name", default="", help="Licensee display name.")
@click.option("--tier", default=None, help="Tier name (community, professional, enterprise, premium).")
@click.option("--expires", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Expiry date (UTC), YYYY-MM-DD.  Defaults to one year from now.")
@click.option("--max-users", type=int, default=None, help="Seat count (volumetric).")
@click.option("--max-devices", type=int, default=None, help="Activations or machine bindings.")
@click.option("--feature", "features", multiple=True, help="Feature to grant (repeatable).")
@click.option("--by", "generated_by", required=True, help="Who is issuing the license.")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the signed license JSON to this file.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def generate(
    ctx: click.Context,
    license_type: str,
    product_id: str,
    consumer_id: str,
    product_name: str,
    consumer_name: str,
    tier: Optional[str],
    expires: Optional[datetime],
    max_users: Optional[int],
    max_devices: Optional[int],
    features: tuple[str, ...],
    generated_by: str,
    out_path: Optional[Path],
    json_mode: bool,
) -> None:
    """Issue, sign and record a license."""
    request = LicenseGenerationRequest(
        product_id=product_id,
        consumer_id=consumer_id,
        license_model=_TYPE_NAMES[license_type],
        product_name=product_name,
        consumer_name=consumer_name,
        product_tier=tier,
        expiry_date=ensure_utc(expires) if expires else None,
        max_users=max_users,
        max_devices=max_devices,
        metadata={f"{FEATURE_METADATA_PREFIX}{name}": True for name in features},
    )
    db = _db(ctx)
    factory = LicenseGenerationFactory.with_default_strategies(
        LicenseGenerator(), _key_store(ctx), store=db, audit_sink=db,
    )
    try:
        entity = factory.generate(request, generated_by)
    except GenerationRequestError as exc:
        _fail(str(exc), exc.code or "INVALID_REQUEST", json_mode)
        return
    except (ValueError, KeyStoreError) as exc:
        _fail(f"License generation failed: {exc}", getattr(exc, "code", None) or "GENERATION_FAILED", json_mode)
        return

    data: dict[str, Any] = entity.to_dict()
    if out_path is not None and entity.signed_license is not None:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(entity.signed_license.to_json(indent=2), encoding="utf-8")
        data["license_file"] = str(out_path)
    click.echo(format_license_entity(data, json_mode=json_mode))


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("license_file", type=click.Path(path_type=Path))
@click.option("--public-key", "public_key_path", type=click.Path(path_type=Path), default=None,
              help="PEM public key.  Looked up by product id when omitted.")
@click.option("--no-cache", is_flag=True, help="Bypass the validation result cache.")
@click.option("--no-grace", is_flag=True, help="Reject expired licenses even within the grace period.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def validate(
    ctx: click.Context,
    license_file: Path,
    public_key_path: Optional[Path],
    no_cache: bool,
    no_grace: bool,
    json_mode: bool,
) -> None:
    """Validate a signed LICENSE_FILE.  Exits 1 unless the license is valid."""
    options = copy.copy(_config(ctx).validation)
    if no_cache:
        options.enable_caching = False
    if no_grace:
        options.allow_grace_period = False
    service = LicenseValidationService(
        _key_store(ctx),
        options=options,
        audit_sink=_db(ctx) if options.enable_audit_logging else None,
    )
    result = service.validate_from_file(license_file, public_key_path)
    click.echo(format_validation_result(result.to_dict(), json_mode=json_mode))
    if not result.is_valid:
        sys.exit(1)


# ---------------------------------------------------------------------------
# settings
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("license_type", type=click.Choice(sorted(_TYPE_NAMES)))
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def settings(ctx: click.Context, license_type: str, json_mode: bool) -> None:
    """Show recommended settings for a license model."""
    factory = LicenseGenerationFactory.with_default_strategies(LicenseGenerator(), _key_store(ctx))
    strategy = factory.get_strategy(_TYPE_NAMES[license_type])
    click.echo(format_response("success", data=strategy.get_recommended_settings(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--license-id", default=None, help="Only entries for this license.")
@click.option("--product", "product_id", default=None, help="Only entries for this product.")
@click.option("--operation", default=None, help="Only this operation (e.g. created, validated).")
@click.option("--limit", default=50, show_default=True, help="Maximum entries.")
@click.option("--verify", is_flag=True, help="Check audit row signatures instead of listing.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def audit(
    ctx: click.Context,
    license_id: Optional[str],
    product_id: Optional[str],
    operation: Optional[str],
    limit: int,
    verify: bool,
    json_mode: bool,
) -> None:
    """List or verify the audit trail."""
    db = _db(ctx)
    if verify:
        report = db.verify_audit_log()
        click.echo(format_response("success" if report["integrity"] == "ok" else "error",
                                   data=report,
                                   error=None if report["integrity"] == "ok" else
                                   {"code": "AUDIT_COMPROMISED",
                                    "message": f"{report['invalid']} audit rows failed verification"},
                                   json_mode=json_mode))
        if report["integrity"] != "ok":
            sys.exit(1)
        return
    rows = db.query_audit(license_id=license_id, product_id=product_id, operation=operation, limit=limit)
    click.echo(format_audit_rows(rows, json_mode=json_mode))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
