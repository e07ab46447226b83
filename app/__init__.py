"""Application factory and bootstrap helpers."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

import json
from datetime import datetime
from typing import Optional

import click
from flask import Flask
from flask.cli import AppGroup

from config.logging_config import setup_logging
from extensions import db, migrate

from .config import AppConfig


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _register_payouts_cli(app: Flask) -> None:
    payouts_cli = AppGroup("payouts")

    @payouts_cli.command("generate")
    @click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), help="Inicio del periodo (YYYY-MM-DD)")
    @click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), help="Fin del periodo, exclusivo (YYYY-MM-DD)")
    @click.option("--vendor", "vendor_id", type=int, default=None, help="Solo este vendedor")
    def payouts_generate(start: Optional[datetime], end: Optional[datetime], vendor_id: Optional[int]):
        """Genera los pagos del periodo (por defecto, el mes anterior)."""
        from services.base import ServiceException
        from services.payout_service import PayoutService, previous_month_period

        if (start is None) != (end is None):
            raise click.ClickException("--start y --end deben indicarse juntos.")
        if start is None:
            start, end = previous_month_period()

        service = PayoutService()
        try:
            if vendor_id is not None:
                payout_id = service.generate_payout(vendor_id, start, end)
                if payout_id is None:
                    click.echo(f"[INFO] Vendedor {vendor_id}: nada para pagar en el periodo.")
                else:
                    click.echo(f"[OK] Payout {payout_id} generado para el vendedor {vendor_id}.")
                return
            results = service.generate_payouts_for_period(start, end)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")

        created = [result for result in results if result["payout_id"]]
        failed = [result for result in results if result["error"]]
        for result in failed:
            click.echo(f"[WARN] Vendedor {result['vendor_id']}: {result['error']} {result.get('message', '')}")
        click.echo(
            f"[OK] Periodo {start:%Y-%m-%d}..{end:%Y-%m-%d}: "
            f"{len(created)} payout(s), {len(failed)} error(es), {len(results)} vendedor(es)."
        )

    @payouts_cli.command("charge-fees")
    @click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), help="Inicio del periodo (YYYY-MM-DD)")
    @click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), help="Fin del periodo, exclusivo (YYYY-MM-DD)")
    def payouts_charge_fees(start: Optional[datetime], end: Optional[datetime]):
        """Cobra la cuota mensual del plan a cada vendedor activo."""
        from services.base import ServiceException
        from services.payout_service import PayoutService, previous_month_period

        if (start is None) != (end is None):
            raise click.ClickException("--start y --end deben indicarse juntos.")
        if start is None:
            start, end = previous_month_period()

        try:
            results = PayoutService().charge_subscription_fees(start, end)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")

        charged = [result for result in results if result["payout_id"]]
        for result in results:
            if result["error"]:
                click.echo(f"[WARN] Vendedor {result['vendor_id']}: {result['error']} {result.get('message', '')}")
        click.echo(f"[OK] Periodo {start:%Y-%m-%d}..{end:%Y-%m-%d}: {len(charged)} cuota(s) cobradas.")

    @payouts_cli.command("complete")
    @click.argument("payout_id", type=int)
    def payouts_complete(payout_id: int):
        """Marca un pago como acreditado."""
        from services.base import ServiceException
        from services.payout_service import PayoutService

        try:
            payout = PayoutService().complete_payout(payout_id)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        click.echo(f"[OK] Payout {payout.id} -> {payout.status}")

    app.cli.add_command(payouts_cli)


def _register_commissions_cli(app: Flask) -> None:
    commissions_cli = AppGroup("commissions")

    @commissions_cli.command("calculate")
    @click.argument("order_id", type=int)
    def commissions_calculate(order_id: int):
        """Calcula las comisiones de una orden."""
        from services.base import ServiceException
        from services.commission_service import CommissionService

        try:
            breakdowns = CommissionService().create_commissions_for_order(order_id)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        _echo_json([breakdown.to_dict() for breakdown in breakdowns])
        click.echo(f"[OK] {len(breakdowns)} comision(es) para la orden {order_id}.")

    @commissions_cli.command("refund")
    @click.argument("order_id", type=int)
    def commissions_refund(order_id: int):
        """Cancela las comisiones pendientes de una orden reembolsada."""
        from services.commission_service import CommissionService

        result = CommissionService().cancel_commissions_for_order(order_id)
        if result["paid_record_ids"]:
            click.echo(f"[WARN] Comisiones ya pagadas: {result['paid_record_ids']}")
        click.echo(f"[OK] {result['cancelled']} comision(es) canceladas.")

    @commissions_cli.command("dashboard")
    @click.argument("vendor_id", type=int)
    @click.option("--currency", default="USD", help="Moneda de visualizacion")
    def commissions_dashboard(vendor_id: int, currency: str):
        """Muestra el dashboard de comisiones de un vendedor."""
        from services.base import ServiceException
        from services.commission_service import CommissionService

        try:
            _echo_json(CommissionService().get_dashboard(vendor_id, currency=currency))
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")

    app.cli.add_command(commissions_cli)


def _register_dropship_cli(app: Flask) -> None:
    dropship_cli = AppGroup("dropship")

    @dropship_cli.command("poll")
    def dropship_poll():
        """Consulta el estado de las ordenes enviadas a proveedores."""
        from services.dropshipping.sync import get_supplier_sync

        result = get_supplier_sync(app).poll()
        for deferred in result.deferred:
            click.echo(
                f"[WARN] Proveedor {deferred['supplier_id']} diferido {deferred['retry_after']:.1f}s "
                f"({len(deferred['supplier_order_ids'])} orden(es) sin consultar)"
            )
        for error in result.errors:
            click.echo(f"[WARN] Orden proveedor {error['supplier_order_id']}: {error['error']}")
        click.echo(
            f"[OK] Consultadas={result.checked}, actualizadas={len(result.updates)}, "
            f"notificadas={len(result.notified)}"
        )

    @dropship_cli.command("send")
    @click.argument("supplier_order_id", type=int)
    def dropship_send(supplier_order_id: int):
        """Envia una orden PENDING al proveedor."""
        from services.base import ServiceException
        from services.dropshipping.sync import get_supplier_sync

        try:
            result = get_supplier_sync(app).send_order(supplier_order_id)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        if result.deferred:
            click.echo(f"[WARN] Rate limit del proveedor; reintentar en {result.retry_after:.1f}s")
            return
        click.echo(f"[OK] Orden {supplier_order_id} enviada como {result.external_order_id}")

    @dropship_cli.command("create")
    @click.argument("order_id", type=int)
    def dropship_create(order_id: int):
        """Crea las ordenes a proveedores de una orden de la tienda."""
        from services.base import ServiceException
        from services.dropshipping.sync import get_supplier_sync

        try:
            results = get_supplier_sync(app).create_supplier_orders(order_id)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        _echo_json(results)
        click.echo(f"[OK] {len(results)} orden(es) a proveedores.")

    @dropship_cli.command("test-connection")
    @click.argument("supplier_id", type=int)
    def dropship_test_connection(supplier_id: int):
        """Prueba las credenciales de un proveedor contra su API."""
        from services.base import ServiceException
        from services.dropshipping.sync import get_supplier_sync

        try:
            ok = get_supplier_sync(app).test_supplier_connection(supplier_id)
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        if not ok:
            raise click.ClickException(f"No se pudo conectar con el proveedor {supplier_id}.")
        click.echo(f"[OK] Conexion con el proveedor {supplier_id} verificada.")

    app.cli.add_command(dropship_cli)


def _register_fx_cli(app: Flask) -> None:
    fx_cli = AppGroup("fx")

    @fx_cli.command("show")
    @click.option("--base", default=None, help="Moneda base (por defecto BASE_CURRENCY)")
    def fx_show(base: Optional[str]):
        """Muestra la tabla de tipos de cambio vigente."""
        from services.currency import get_rate_table

        base_currency = (base or app.config.get("BASE_CURRENCY", "USD")).upper()
        for code, rate in sorted(get_rate_table(base_currency).items()):
            click.echo(f"{base_currency}/{code} = {rate}")

    @fx_cli.command("set")
    @click.option("--currency", required=True, help="Moneda cotizada (ej. EUR)")
    @click.option("--value", required=True, type=str, help="Unidades de la moneda por 1 unidad base")
    @click.option("--date", "as_of", type=click.DateTime(formats=["%Y-%m-%d"]), help="Fecha de vigencia (YYYY-MM-DD)")
    @click.option("--provider", default="manual", help="Origen del valor")
    def fx_set(currency: str, value: str, as_of: Optional[datetime], provider: str):
        """Guarda un tipo de cambio del dia."""
        from services.base import ServiceException
        from services.currency import store_rate

        try:
            snapshot = store_rate(
                currency,
                value,
                base_currency=app.config.get("BASE_CURRENCY", "USD"),
                provider=provider,
                as_of=as_of.date() if as_of else None,
            )
        except ServiceException as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        click.echo(
            "[OK] Tipo de cambio actualizado: {base}/{quote}={valor} ({prov} {fecha:%d/%m/%Y})".format(
                base=snapshot.base_currency,
                quote=snapshot.quote_currency,
                valor=snapshot.value,
                prov=snapshot.provider.upper(),
                fecha=snapshot.as_of_date,
            )
        )

    app.cli.add_command(fx_cli)


def _register_clis(app: Flask) -> None:
    _register_payouts_cli(app)
    _register_commissions_cli(app)
    _register_dropship_cli(app)
    _register_fx_cli(app)


def _init_supplier_components(app: Flask) -> None:
    from services.dropshipping.rate_limit import SupplierRateLimiter
    from services.dropshipping.token_cache import build_token_cache

    app.extensions["supplier_rate_limiter"] = SupplierRateLimiter(
        auth_interval=app.config["SUPPLIER_AUTH_INTERVAL"],
        data_interval=app.config["SUPPLIER_DATA_INTERVAL"],
    )
    app.extensions["supplier_token_cache"] = build_token_cache(app.config.get("REDIS_URL"))


def create_app(config: Optional[AppConfig] = None) -> Flask:
    app = Flask(__name__)

    cfg = config or AppConfig()
    cfg.init_app(app)

    setup_logging(app)

    db.init_app(app)
    migrate.init_app(app, db, compare_type=True, directory="migrations")

    # register the mappers before anything queries
    import models  # noqa: F401

    _init_supplier_components(app)
    _register_clis(app)

    return app


__all__ = ["create_app", "db", "migrate"]
