#!/usr/bin/env python3
"""
NEXUS Boarding CLI

Administrative command surface for a crew sale. Every command loads the
engine from the state file, runs one engine operation and saves the state
back atomically.

Usage:
    nexus [--state PATH] [--caller ADDRESS | --key JWK] <command> [subcommand] [options]

Commands:
    deploy        Create a new sale state file
    uri           Metadata base URI (get/set)
    boarding      General boarding flag (get/set)
    preboarding   Preboarding flag (get/set)
    limit         Per-wallet token limit (get/set)
    withdrawal    Withdrawal address (get/set)
    price         Unit prices (get/set)
    gift          Owner gift issuance
    mint          Paid issuance
    withdraw      Move the balance to the withdrawal address
    owner         Ownership (get/transfer)
    royalty       Royalty for a sale price
    token-uri     Metadata URI of a token
    state         Engine snapshot
    audit         Audit trail (show/verify)
    allowlist     Offline allow-list Merkle tools (build/proof/verify)
    keygen        Generate an operator Ed25519 key
    config        Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from tools.nexus import __version__
from tools.nexus.allowlist import AllowListTree, leaf_hash, load_addresses, verify_proof
from tools.nexus.config import ConfigError, get_config_manager
from tools.nexus.engine import IssuanceEngine
from tools.nexus.errors import IssuanceError, SignatureInvalid, StateError, ValidationError
from tools.nexus.hardening import format_ether, normalize_address, parse_amount, parse_bool
from tools.nexus.observability import (
    AuditEventType,
    AuditLog,
    NexusLayer,
    configure_logging,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from tools.nexus.pricing import SalePhase
from tools.nexus.signer import CallerAuthenticator, CommandSigner, generate_ed25519_jwk
from tools.nexus.store import JsonFileStore, JsonlAuditSink

log = get_logger("cli", NexusLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    elif isinstance(data, dict) and len(data) == 1:
        return str(next(iter(data.values())))
    return _format_table(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:66] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _amount(wei: int) -> Dict[str, str]:
    return {"wei": str(wei), "ether": format_ether(wei)}


class NexusCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="nexus",
            description="NEXUS crew boarding administration",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"nexus {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--state", "-s", help="Engine state file (default: storage.state_path)")
        self.parser.add_argument("--audit", help="Audit JSONL file (default: storage.audit_path)")
        self.parser.add_argument("--caller", help="Caller address for the command")
        self.parser.add_argument("--key", "-k", help="Operator Ed25519 JWK; the caller is derived from it")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_deploy_command()
        self._register_setting_commands()
        self._register_issuance_commands()
        self._register_query_commands()
        self._register_allowlist_commands()
        self._register_keygen_command()
        self._register_config_commands()

    def _register_deploy_command(self) -> None:
        deploy = self.subparsers.add_parser("deploy", help="Create a new sale state file")
        deploy.add_argument("--max-total", type=int, help="Crew size (total capacity)")
        deploy.add_argument("--founding-crew", type=int, help="Founding crew size (preboarding capacity)")
        deploy.add_argument("--max-per-wallet", type=int, help="Per-wallet token limit")
        deploy.add_argument("--base-uri", help="Metadata base URI")
        deploy.add_argument("--merkle-root", help="Allow-list root (64 hex)")
        deploy.add_argument("--allowlist", help="CSV of allow-listed addresses; root is computed")
        deploy.add_argument("--owner", help="Owner address (default: the caller)")
        deploy.add_argument("--presale-price", help="Preboarding unit price")
        deploy.add_argument("--general-price", help="General unit price")
        deploy.add_argument("--unit", choices=["auto", "ether", "wei"], default="auto")
        deploy.add_argument("--royalty-bps", type=int, help="Royalty rate in basis points")
        deploy.add_argument("--force", action="store_true", help="Overwrite an existing state file")

    def _register_setting_commands(self) -> None:
        """Register get/set pairs for the owner-controlled settings."""
        uri = self.subparsers.add_parser("uri", help="Metadata base URI")
        uri_sub = uri.add_subparsers(dest="subcommand")
        uri_sub.add_parser("get", help="Show the base URI")
        uri_set = uri_sub.add_parser("set", help="Replace the base URI")
        uri_set.add_argument("uri")

        for name, help_text in (
            ("boarding", "General boarding flag"),
            ("preboarding", "Preboarding flag"),
        ):
            flag = self.subparsers.add_parser(name, help=help_text)
            flag_sub = flag.add_subparsers(dest="subcommand")
            flag_sub.add_parser("get", help=f"Show the {name} flag")
            flag_set = flag_sub.add_parser("set", help=f"Open or close {name}")
            flag_set.add_argument("enabled", help="true/false")

        limit = self.subparsers.add_parser("limit", help="Per-wallet token limit")
        limit_sub = limit.add_subparsers(dest="subcommand")
        limit_sub.add_parser("get", help="Show the per-wallet limit")
        limit_set = limit_sub.add_parser("set", help="Replace the per-wallet limit")
        limit_set.add_argument("limit", type=int)

        withdrawal = self.subparsers.add_parser("withdrawal", help="Withdrawal address")
        withdrawal_sub = withdrawal.add_subparsers(dest="subcommand")
        withdrawal_sub.add_parser("get", help="Show the withdrawal address")
        withdrawal_set = withdrawal_sub.add_parser("set", help="Replace the withdrawal address")
        withdrawal_set.add_argument("address")

        price = self.subparsers.add_parser("price", help="Unit prices")
        price_sub = price.add_subparsers(dest="subcommand")
        price_get = price_sub.add_parser("get", help="Show unit prices")
        price_get.add_argument("--phase", help="presale or general (default: both)")
        price_set = price_sub.add_parser("set", help="Replace a unit price")
        price_set.add_argument("price", help="Amount; a decimal point means ether")
        price_set.add_argument("--phase", required=True, help="presale or general")
        price_set.add_argument("--unit", choices=["auto", "ether", "wei"], default="auto")

        owner = self.subparsers.add_parser("owner", help="Sale ownership")
        owner_sub = owner.add_subparsers(dest="subcommand")
        owner_sub.add_parser("get", help="Show the owner")
        owner_transfer = owner_sub.add_parser("transfer", help="Transfer ownership")
        owner_transfer.add_argument("address")

    def _register_issuance_commands(self) -> None:
        gift = self.subparsers.add_parser("gift", help="Gift tokens (owner only)")
        gift.add_argument("--address", "-a", required=True, help="Recipient")
        gift.add_argument("--tokens", "-n", type=int, required=True, help="Number of tokens")
        gift.add_argument("--category", help="Crew category")

        mint = self.subparsers.add_parser("mint", help="Request paid issuance")
        mint.add_argument("--quantity", "-n", type=int, default=1)
        mint.add_argument("--price", help="Payment sent (default: exact required amount)")
        mint.add_argument("--unit", choices=["auto", "ether", "wei"], default="auto")
        mint.add_argument("--phase", help="presale or general (default: presale iff a proof is given)")
        mint.add_argument("--proof-file", help="JSON proof list, or an allowlist build artifact")
        mint.add_argument("--category", help="Crew category")
        mint.add_argument("--recipient", help="Recipient (default: the caller)")

        self.subparsers.add_parser("withdraw", help="Withdraw the balance (owner only)")

    def _register_query_commands(self) -> None:
        royalty = self.subparsers.add_parser("royalty", help="Royalty owed on a sale")
        royalty.add_argument("--token-id", type=int, required=True)
        royalty.add_argument("--sale-price", required=True)
        royalty.add_argument("--unit", choices=["auto", "ether", "wei"], default="auto")

        token_uri = self.subparsers.add_parser("token-uri", help="Metadata URI of a token")
        token_uri.add_argument("--token-id", type=int, required=True)

        state = self.subparsers.add_parser("state", help="Engine state")
        state_sub = state.add_subparsers(dest="subcommand")
        state_sub.add_parser("show", help="Print the full snapshot")

        audit = self.subparsers.add_parser("audit", help="Audit trail")
        audit_sub = audit.add_subparsers(dest="subcommand")
        audit_show = audit_sub.add_parser("show", help="List audit events")
        audit_show.add_argument("--actor")
        audit_show.add_argument("--type", dest="event_type")
        audit_show.add_argument("--limit", type=int, default=100)
        audit_sub.add_parser("verify", help="Verify the audit hash chain")

    def _register_allowlist_commands(self) -> None:
        allowlist = self.subparsers.add_parser("allowlist", help="Allow-list Merkle tools")
        allowlist_sub = allowlist.add_subparsers(dest="subcommand")

        build = allowlist_sub.add_parser("build", help="Build the tree and every proof")
        build.add_argument("csv", help="Address list (CSV, first column)")
        build.add_argument("--out", "-o", help="Write the artifact here")

        proof = allowlist_sub.add_parser("proof", help="Proof for one address")
        proof.add_argument("csv")
        proof.add_argument("address")

        verify = allowlist_sub.add_parser("verify", help="Check a proof against a root")
        verify.add_argument("--root", required=True)
        verify.add_argument("--address", required=True)
        verify.add_argument("--proof-file", required=True)

    def _register_keygen_command(self) -> None:
        keygen = self.subparsers.add_parser("keygen", help="Generate an operator Ed25519 JWK")
        keygen.add_argument("--out", "-o", required=True)
        keygen.add_argument("--kid", default="key-1")
        keygen.add_argument("--force", action="store_true")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show current configuration")
        config_get = config_sub.add_parser("get", help="Get a configuration value")
        config_get.add_argument("path", help="Config path (e.g., sale.max_per_wallet)")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    # -------------------------------------------------------------------------
    # Run / dispatch
    # -------------------------------------------------------------------------

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())
        try:
            self._setup(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except IssuanceError as e:
            if not parsed.quiet:
                print(f"Error: {e.reason}", file=sys.stderr)
            return 2

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ValidationError, ConfigError, StateError, SignatureInvalid, ValueError, OSError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _setup(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        configure_logging(
            level=mgr.get("observability.log_level"),
            fmt=mgr.get("observability.log_format"),
        )

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}".rstrip())

        return handler(args)

    # -------------------------------------------------------------------------
    # Engine plumbing
    # -------------------------------------------------------------------------

    def _store(self, args: argparse.Namespace) -> JsonFileStore:
        path = args.state or get_config_manager().get("storage.state_path")
        return JsonFileStore(path)

    def _audit(self, args: argparse.Namespace) -> AuditLog:
        sink = JsonlAuditSink(args.audit or get_config_manager().get("storage.audit_path"))
        audit = sink.load_log()
        audit.add_sink(sink)
        return audit

    def _load(self, args: argparse.Namespace, store: Optional[JsonFileStore] = None) -> IssuanceEngine:
        store = store or self._store(args)
        engine = store.load(audit=self._audit(args))
        if engine is None:
            raise CLIError(f"No sale state at {store.path}; run `nexus deploy` first")
        return engine

    def _caller(self, args: argparse.Namespace, required: bool = True) -> Optional[str]:
        """
        Resolve who is issuing the command.

        With a key (flag or `auth.key_path`) the caller is the address derived
        from it. The command is signed and verified in this process, which
        proves only that the key file holds a usable private key; the replay
        cache of the `CallerAuthenticator` lives for this one command. Signed
        commands that arrive from elsewhere go through
        `CallerAuthenticator.authenticate` directly.

        `--caller` is accepted unless `auth.require_signatures` is set.
        """
        mgr = get_config_manager()
        key_path = args.key or mgr.get("auth.key_path")
        if key_path:
            signer = CommandSigner.from_file(key_path)
            command = {
                "command": args.command,
                "subcommand": getattr(args, "subcommand", None),
                "argv": {k: v for k, v in sorted(vars(args).items()) if isinstance(v, (str, int, bool)) or v is None},
            }
            address = CallerAuthenticator().authenticate(signer.sign(command))
            if args.caller and normalize_address(args.caller, "caller") != address:
                raise CLIError("--caller does not match the signing key", exit_code=3)
            return address

        if mgr.get("auth.require_signatures") and required:
            raise CLIError("Signed commands are required; pass --key", exit_code=3)
        if args.caller:
            return normalize_address(args.caller, "caller")
        if required:
            raise CLIError("No caller; pass --caller or --key", exit_code=3)
        return None

    def _mutate(self, args: argparse.Namespace, op) -> Any:
        """Load, run `op(engine, caller)`, save; all under the state file lock."""
        caller = self._caller(args)
        store = self._store(args)
        with store.locked():
            engine = self._load(args, store)
            result = op(engine, caller)
            store.save(engine)
        return result

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def _handle_deploy(self, args: argparse.Namespace) -> Any:
        store = self._store(args)
        with store.locked():
            return self._deploy(args, store)

    def _deploy(self, args: argparse.Namespace, store: JsonFileStore) -> Dict[str, Any]:
        if store.exists() and not args.force:
            raise CLIError(f"State file already exists: {store.path} (use --force)")

        mgr = get_config_manager()
        caller = self._caller(args, required=args.owner is None)
        owner = args.owner or caller

        root = args.merkle_root
        if args.allowlist:
            if root:
                raise CLIError("Pass either --merkle-root or --allowlist, not both")
            root = AllowListTree.from_addresses(load_addresses(Path(args.allowlist))).root

        def _price(value: Optional[str], key: str) -> int:
            return parse_amount(value, args.unit) if value is not None else mgr.get(key)

        def _pick(value: Optional[int], key: str) -> int:
            return value if value is not None else mgr.get(key)

        audit = self._audit(args)
        engine = IssuanceEngine(
            owner=owner,
            max_total_issued=_pick(args.max_total, "sale.max_total_issued"),
            max_per_wallet=_pick(args.max_per_wallet, "sale.max_per_wallet"),
            allow_list_root=root,
            base_uri=args.base_uri if args.base_uri is not None else mgr.get("sale.base_uri"),
            max_preboarding_issued=_pick(args.founding_crew, "sale.max_preboarding_issued"),
            presale_price=_price(args.presale_price, "sale.presale_price_wei"),
            general_price=_price(args.general_price, "sale.general_price_wei"),
            royalty_bps=_pick(args.royalty_bps, "sale.royalty_bps"),
            audit=audit,
        )
        audit.log(
            AuditEventType.DEPLOYED,
            actor=caller or engine.owner,
            action="deploy",
            outcome="success",
            details={"owner": engine.owner, "state": str(store.path)},
        )
        digest = store.save(engine, overwrite=args.force)
        log.info("Sale deployed", state=str(store.path), owner=engine.owner)
        return {
            "state": str(store.path),
            "digest": digest,
            "owner": engine.owner,
            "treasury": engine.treasury,
            "max_total_issued": engine.max_total_issued,
            "max_preboarding_issued": engine.max_preboarding_issued,
            "max_per_wallet": engine.max_per_wallet,
            "allow_list_root": engine.allow_list_root,
            "base_uri": engine.base_uri,
        }

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def _handle_uri_get(self, args: argparse.Namespace) -> Any:
        return {"base_uri": self._load(args).base_uri}

    def _handle_uri_set(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_base_uri(caller, args.uri)
            return {"base_uri": engine.base_uri}
        return self._mutate(args, op)

    def _handle_boarding_get(self, args: argparse.Namespace) -> Any:
        return {"general_open": self._load(args).general_open}

    def _handle_boarding_set(self, args: argparse.Namespace) -> Any:
        enabled = parse_bool(args.enabled)

        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_general_boarding(caller, enabled)
            return {"general_open": engine.general_open}
        return self._mutate(args, op)

    def _handle_preboarding_get(self, args: argparse.Namespace) -> Any:
        return {"preboarding_open": self._load(args).preboarding_open}

    def _handle_preboarding_set(self, args: argparse.Namespace) -> Any:
        enabled = parse_bool(args.enabled)

        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_preboarding(caller, enabled)
            return {"preboarding_open": engine.preboarding_open}
        return self._mutate(args, op)

    def _handle_limit_get(self, args: argparse.Namespace) -> Any:
        return {"max_per_wallet": self._load(args).max_per_wallet}

    def _handle_limit_set(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_per_wallet_limit(caller, args.limit)
            return {"max_per_wallet": engine.max_per_wallet}
        return self._mutate(args, op)

    def _handle_withdrawal_get(self, args: argparse.Namespace) -> Any:
        return {"withdrawal_address": self._load(args).withdrawal_address}

    def _handle_withdrawal_set(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_withdrawal_address(caller, args.address)
            return {"withdrawal_address": engine.withdrawal_address}
        return self._mutate(args, op)

    def _handle_price_get(self, args: argparse.Namespace) -> Any:
        engine = self._load(args)
        phases = [SalePhase.parse(args.phase)] if args.phase else list(SalePhase)
        return {p.value: _amount(engine.price(p)) for p in phases}

    def _handle_price_set(self, args: argparse.Namespace) -> Any:
        phase = SalePhase.parse(args.phase)
        price = parse_amount(args.price, args.unit)

        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.set_price(caller, phase, price)
            return {phase.value: _amount(engine.price(phase))}
        return self._mutate(args, op)

    def _handle_owner_get(self, args: argparse.Namespace) -> Any:
        return {"owner": self._load(args).owner}

    def _handle_owner_transfer(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            engine.transfer_ownership(caller, args.address)
            return {"owner": engine.owner}
        return self._mutate(args, op)

    # -------------------------------------------------------------------------
    # Issuance and funds
    # -------------------------------------------------------------------------

    def _handle_gift(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            return engine.gift_issuance(caller, args.address, args.tokens, category=args.category).to_dict()
        return self._mutate(args, op)

    def _load_proof(self, path: str, caller: str) -> List[str]:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict) and isinstance(data.get("proofs"), dict):
            proofs = data["proofs"]
            if caller not in proofs:
                raise CLIError(f"No proof for {caller} in {path}")
            data = proofs[caller]
        elif isinstance(data, dict) and "proof" in data:
            data = data["proof"]
        if not isinstance(data, list) or not all(isinstance(p, str) for p in data):
            raise CLIError(f"Proof file must hold a list of hex digests: {path}")
        return data

    def _handle_mint(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            proof = self._load_proof(args.proof_file, caller) if args.proof_file else None
            phase = SalePhase.parse(args.phase) if args.phase else (SalePhase.PRESALE if args.proof_file else SalePhase.GENERAL)
            if args.price is not None:
                payment = parse_amount(args.price, args.unit)
            else:
                payment = engine.price(phase) * args.quantity
            receipt = engine.request_issuance(
                caller,
                args.recipient or caller,
                args.quantity,
                payment,
                proof=proof,
                category=args.category,
                phase=phase,
            )
            return receipt.to_dict()
        return self._mutate(args, op)

    def _handle_withdraw(self, args: argparse.Namespace) -> Any:
        def op(engine: IssuanceEngine, caller: str) -> Any:
            amount = engine.withdraw_funds(caller)
            return {"to": engine.withdrawal_address, "amount": _amount(amount)}
        return self._mutate(args, op)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _handle_royalty(self, args: argparse.Namespace) -> Any:
        engine = self._load(args)
        recipient, amount = engine.royalty_info(args.token_id, parse_amount(args.sale_price, args.unit))
        return {"recipient": recipient, "amount": _amount(amount), "royalty_bps": engine.royalty_bps}

    def _handle_token_uri(self, args: argparse.Namespace) -> Any:
        return {"token_uri": self._load(args).token_uri(args.token_id)}

    def _handle_state_show(self, args: argparse.Namespace) -> Any:
        return self._load(args).snapshot()

    def _handle_audit_show(self, args: argparse.Namespace) -> Any:
        audit = self._audit(args)
        event_type = AuditEventType(args.event_type) if args.event_type else None
        events = audit.get_events(actor=args.actor, event_type=event_type, limit=args.limit)
        return [
            {
                "event_id": e.event_id,
                "event_type": e.event_type.value,
                "actor": e.actor,
                "action": e.action,
                "outcome": e.outcome,
                "timestamp": e.timestamp,
            }
            for e in events
        ]

    def _handle_audit_verify(self, args: argparse.Namespace) -> Any:
        audit = self._audit(args)
        valid, first_bad = audit.verify_chain()
        if not valid:
            raise CLIError(f"Audit chain broken at event index {first_bad}", exit_code=4)
        return {"valid": True, "events": len(audit)}

    # -------------------------------------------------------------------------
    # Allow-list
    # -------------------------------------------------------------------------

    def _handle_allowlist_build(self, args: argparse.Namespace) -> Any:
        tree = AllowListTree.from_addresses(load_addresses(Path(args.csv)))
        artifact = tree.to_dict()
        if args.out:
            Path(args.out).write_text(json.dumps(artifact, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            return {"root": tree.root, "size": tree.size, "out": args.out}
        return artifact

    def _handle_allowlist_proof(self, args: argparse.Namespace) -> Any:
        tree = AllowListTree.from_addresses(load_addresses(Path(args.csv)))
        address = normalize_address(args.address)
        try:
            proof = tree.proof(address)
        except KeyError:
            raise CLIError(f"Address not in allow-list: {address}") from None
        return {"address": address, "leaf": leaf_hash(address), "root": tree.root, "proof": proof}

    def _handle_allowlist_verify(self, args: argparse.Namespace) -> Any:
        address = normalize_address(args.address)
        proof = self._load_proof(args.proof_file, address)
        return {"address": address, "root": args.root, "valid": verify_proof(args.root, leaf_hash(address), proof)}

    # -------------------------------------------------------------------------
    # Keys and config
    # -------------------------------------------------------------------------

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        out = Path(args.out)
        if out.exists() and not args.force:
            raise CLIError(f"Key file already exists: {out} (use --force)")
        jwk = generate_ed25519_jwk(kid=args.kid)
        out.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(out), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(jwk, indent=2) + "\n")
        return {"out": str(out), "kid": args.kid, "address": CommandSigner.from_jwk(jwk).address}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict(redact=True)

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main() -> int:
    """CLI entry point."""
    cli = NexusCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
