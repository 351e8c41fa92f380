"""Command line interface for the fiscal intake pipelines."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from .config import Settings
from .core.errors import FiscalIntakeError
from .core.pipeline import Processor


LOGGER = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def load_settings(config_path: str) -> Settings:
    path = Path(config_path)
    if not path.exists():
        LOGGER.info("Configuration %s not found, using defaults", path)
        settings = Settings.default(Path.cwd() / "data")
        settings.ensure_folders()
        return settings
    return Settings.load(path)


def read_text(path: str) -> str:
    raw = Path(path).read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        # older bank exports and some city halls still ship latin-1 files
        return raw.decode("latin-1")


def print_report(report) -> None:
    summary = report.summary()
    print(f"Erros: {summary['total_errors']}  Avisos: {summary['total_warnings']}  Correções: {summary['total_corrections']}")
    for label, issues in (("ERRO", report.errors), ("AVISO", report.warnings), ("CORREÇÃO", report.corrections)):
        for issue in issues:
            print(f"  [{label}] {issue.field}: {issue.message}")


def command_validate_xml(args: argparse.Namespace) -> None:
    processor = Processor(load_settings(args.config))
    invoice, report = asyncio.run(processor.validate_xml(read_text(args.file), args.company))
    print(f"{invoice.document_kind.value.upper()} {invoice.number}/{invoice.series} - {invoice.supplier.legal_name}")
    print(f"Itens: {len(invoice.line_items)}  Total: {invoice.totals.grand_total:.2f}")
    print_report(report)


def command_import_xml(args: argparse.Namespace) -> None:
    processor = Processor(load_settings(args.config))
    xml_text = read_text(args.file)

    if args.standalone:
        payload = asyncio.run(processor.import_xml_standalone(xml_text, args.company))
        print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
        return

    result = asyncio.run(processor.import_xml(xml_text, args.company))
    print_report(result.report)
    if result.state is None:
        print("Nota não importada.")
        return
    totals = result.state.totals
    print(f"Rascunho: {result.draft_id}")
    print(f"Itens: {len(result.state.items)}  Pendentes de vinculação: {result.pending_count}")
    print(f"Total da nota: {totals.grand_total:.2f}")
    for index, suggestions in result.suggestions.items():
        item = result.state.items[index]
        print(f"  Item {index + 1} ({item.supplier_product_code} - {item.fiscal_description}):")
        for suggestion in suggestions[:3]:
            print(f"    {suggestion.score:>3} {suggestion.product.name} [{suggestion.match_type}] {suggestion.reason}")


def command_import_ofx(args: argparse.Namespace) -> None:
    processor = Processor(load_settings(args.config))

    async def run():
        report = await processor.import_ofx(read_text(args.file), args.company)
        saved = None
        if args.save:
            saved = await processor.ofx.save_transactions(report, args.account, args.company, args.user)
        return report, saved

    report, saved = asyncio.run(run())
    print(f"Período: {report.period_start} a {report.period_end}  Banco: {report.bank_id}  Conta: {report.account_id}")
    print(f"Entradas: {report.total_entries:.2f}  Saídas: {report.total_exits:.2f}  Saldo do período: {report.net_change:.2f}")
    print(f"Transações: {report.processed_count}  Novas: {report.new_count}  Duplicadas: {report.duplicates_count}")
    for transaction in report.transactions:
        match = f" -> {transaction.match_description}" if transaction.match_id else ""
        print(
            f"  {transaction.posted_at} {transaction.amount:>12.2f} [{transaction.status.value}] "
            f"{transaction.category}: {transaction.description}{match}"
        )
    for alert in report.alerts:
        print(f"  ! {alert}")
    if saved is not None:
        print(f"Transações salvas: {saved.count}")
    if args.export:
        json_path, csv_path = processor.export_ofx_report(report, args.account)
        print(f"Exportado: {json_path} / {csv_path}")


def command_load_catalog(args: argparse.Namespace) -> None:
    processor = Processor(load_settings(args.config))
    count = asyncio.run(processor.load_catalog(args.company, Path(args.file) if args.file else None))
    print(f"Produtos carregados: {count}")


def command_api(args: argparse.Namespace) -> None:
    from .api.server import create_app

    settings = load_settings(args.config)
    app = create_app(settings)
    import uvicorn

    uvicorn.run(app, host=args.host or settings.api.host, port=args.port or settings.api.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fiscal document intake (NF-e, NFS-e, OFX)")
    parser.add_argument("--config", default="config.yaml", help="Path to the configuration YAML file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate-xml", help="Parse and validate an NF-e/NFS-e XML file")
    validate_parser.add_argument("file")
    validate_parser.add_argument("--company", default="default", help="Tenant identifier")
    validate_parser.set_defaults(func=command_validate_xml)

    import_parser = subparsers.add_parser("import-xml", help="Import an NF-e/NFS-e XML file")
    import_parser.add_argument("file")
    import_parser.add_argument("--company", default="default", help="Tenant identifier")
    import_parser.add_argument(
        "--standalone",
        action="store_true",
        help="Store the invoice in the invoice register (totals reconciled) instead of building an entry note",
    )
    import_parser.set_defaults(func=command_import_xml)

    ofx_parser = subparsers.add_parser("import-ofx", help="Import an OFX bank statement")
    ofx_parser.add_argument("file")
    ofx_parser.add_argument("--company", default="default", help="Tenant identifier")
    ofx_parser.add_argument("--account", default="default", help="Bank account identifier")
    ofx_parser.add_argument("--user", default=None, help="User responsible for the import")
    ofx_parser.add_argument("--save", action="store_true", help="Persist new transactions for reconciliation")
    ofx_parser.add_argument("--export", action="store_true", help="Write JSON/CSV reports to the export folder")
    ofx_parser.set_defaults(func=command_import_ofx)

    catalog_parser = subparsers.add_parser("load-catalog", help="Load the product catalogue spreadsheet")
    catalog_parser.add_argument("file", nargs="?", default=None)
    catalog_parser.add_argument("--company", default="default", help="Tenant identifier")
    catalog_parser.set_defaults(func=command_load_catalog)

    api_parser = subparsers.add_parser("api", help="Start the FastAPI server")
    api_parser.add_argument("--host", default=None)
    api_parser.add_argument("--port", type=int, default=None)
    api_parser.set_defaults(func=command_api)

    return parser


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    try:
        args.func(args)
    except FiscalIntakeError as exc:
        LOGGER.error("%s", exc)
        parser.exit(1, f"Erro: {exc}\n")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
