"""
NFC-e worker entry point.

Modes:
- parse:  decode a saved detail page (and optionally its products tab)
- scrape: run one portal lookup, answering the captcha from the terminal
- serve:  run the job API
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from nfce.captcha import CaptchaChallenge, ManualSolver
from nfce.config import settings
from nfce.errors import NFCeError
from nfce.extraction import parse_products_tab
from nfce.models import Receipt
from nfce.money import format_brl
from nfce.parsers import build_parser_table, parse_from_html
from nfce.portal_client import SefazBAClient

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("nfce")


def format_receipt(receipt: Receipt) -> str:
    """Human-readable summary of a receipt for the terminal."""
    lines = [
        f"NFC-e {receipt.key}",
        f"Issuer:   {receipt.issuer.name} (CNPJ {receipt.issuer.cnpj})",
    ]
    if receipt.issue_date is not None:
        lines.append(f"Issued:   {receipt.issue_date:%d/%m/%Y %H:%M}")
    if receipt.consumer.document:
        lines.append(f"Consumer: {receipt.consumer.name} ({receipt.consumer.document})")
    lines.append("")

    for item in receipt.items:
        lines.append(
            f"{item.line_number:>3}  {item.description[:40]:<40} "
            f"{item.quantity:>9.3f} {item.unit:<3} {format_brl(item.total):>14}"
        )

    lines.append("")
    lines.append(f"Subtotal: {format_brl(receipt.subtotal)}")
    if receipt.discount:
        lines.append(f"Discount: {format_brl(receipt.discount)}")
    lines.append(f"Total:    {format_brl(receipt.total)}")
    return "\n".join(lines)


def _terminal_prompt(image_path: Path):
    async def prompt(challenge: CaptchaChallenge) -> str:
        image_path.write_bytes(challenge.image)
        print(f"Captcha saved to {image_path}. Type the code and press Enter:", flush=True)
        return await asyncio.to_thread(sys.stdin.readline)

    return prompt


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_parse(args: argparse.Namespace) -> int:
    page = Path(args.file).read_bytes()
    receipt = parse_from_html(page, args.portal, build_parser_table())
    if args.products:
        receipt.items = parse_products_tab(Path(args.products).read_bytes())

    if args.json:
        print(json.dumps(receipt.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(format_receipt(receipt))
    return 0


async def run_scrape(args: argparse.Namespace) -> int:
    solver = ManualSolver(_terminal_prompt(Path(args.captcha_output)))
    async with SefazBAClient(captcha_solver=solver) as client:
        result = await client.fetch_by_access_key(args.key)

    if args.output:
        out = Path(args.output)
        out.mkdir(parents=True, exist_ok=True)
        (out / "danfe.html").write_text(result.danfe_html, encoding="utf-8")
        (out / "nfe_tab.html").write_text(result.nfe_tab_html, encoding="utf-8")
        (out / "products_tab.html").write_text(result.products_tab_html, encoding="utf-8")
        (out / "receipt.json").write_text(
            json.dumps(result.receipt.to_dict(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        logger.info("Saved pages and receipt to %s", out)

    print(format_receipt(result.receipt))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "nfce.api:create_app",
        factory=True,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nfce", description="NFC-e portal worker")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("parse", help="parse a saved NFe tab page")
    p.add_argument("--file", required=True, help="saved NFe tab HTML")
    p.add_argument("--portal", default="BA")
    p.add_argument("--products", help="saved products tab HTML")
    p.add_argument("--json", action="store_true", help="print the receipt as JSON")

    s = sub.add_parser("scrape", help="fetch one invoice from the portal")
    s.add_argument("--key", required=True, help="44-digit access key")
    s.add_argument("--captcha-output", default="captcha.png", help="where to save the captcha image")
    s.add_argument("--output", help="directory for the raw pages and receipt.json")

    v = sub.add_parser("serve", help="run the job API")
    v.add_argument("--host")
    v.add_argument("--port", type=int)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        if args.command == "parse":
            return cmd_parse(args)
        if args.command == "scrape":
            return asyncio.run(run_scrape(args))
        return cmd_serve(args)
    except NFCeError as e:
        logger.error("%s failed [%s]: %s", args.command, e.code, e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
