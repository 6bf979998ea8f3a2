#!/usr/bin/env python3
"""
Custody CLI

Runs the scripted custody flows against the in-memory reference ledger and
inspects configuration.

Usage:
    custody [--config FILE] [--format json|yaml|text] flow custodial
    custody flow kiosk
    custody flow stats
    custody config show
    custody config validate

Flows use the keys and package ids of the loaded configuration where set and
generate the rest, so they run without any deployment.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from custody.config import ConfigManager, CustodyConfig
from custody.errors import ConfigError, CustodyError
from custody.machine import CustodyStateMachine, create_reference_machine
from custody.observability import (
    CustodyLayer,
    configure_logging,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from custody.policy import AllowAllPolicy
from custody.registry import CustodyDomain
from custody.stats import get_stat, read_stats

__version__ = "0.1.0"

logger = get_logger("cli", CustodyLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
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
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


# =============================================================================
# FLOWS
# =============================================================================

def run_custodial_flow(machine: CustodyStateMachine) -> Dict[str, Any]:
    """
    Mint to the custodial wallet, unlock and update the asset there, lock it
    and hand it to the non-custodial wallet.
    """
    asset = machine.mint(machine.mint_capability)
    machine.transfer(asset.asset_id, CustodyDomain.CUSTODIAL_WALLET)

    ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id,
                                          holder=CustodyDomain.CUSTODIAL_WALLET)
    machine.unlock(asset.asset_id, ticket)
    machine.update(asset.asset_id, level=2, xp=100, xp_to_next_level=1000)
    machine.lock(asset.asset_id)
    machine.transfer(asset.asset_id, CustodyDomain.NON_CUSTODIAL_WALLET)
    return {"flow": "custodial", "ticket_id": ticket.capability_id, "asset": asset.to_dict()}


def run_kiosk_flow(machine: CustodyStateMachine) -> Dict[str, Any]:
    """
    Mint into the custodial wallet's kiosk, then withdraw the asset to the
    non-custodial wallet with a transfer token.
    """
    kiosk = machine.create_kiosk(CustodyDomain.CUSTODIAL_WALLET)
    machine.grant_deposit(kiosk.kiosk_id, CustodyDomain.ISSUER)

    asset = machine.mint(machine.mint_capability)
    machine.deposit(asset.asset_id, kiosk.kiosk_id, depositor=CustodyDomain.ISSUER)

    token = machine.create_transfer_token(
        machine.publisher,
        from_domain=CustodyDomain.CUSTODIAL_WALLET,
        to_domain=CustodyDomain.NON_CUSTODIAL_WALLET,
    )
    policy = AllowAllPolicy(machine.config.withdraw_policy_id)
    machine.withdraw(asset.asset_id, kiosk.kiosk_id, token, policy)
    return {
        "flow": "kiosk",
        "kiosk_id": kiosk.kiosk_id,
        "custodial_kiosks": machine.kiosks_of(CustodyDomain.CUSTODIAL_WALLET),
        "token_id": token.capability_id,
        "asset": asset.to_dict(),
    }


def run_stats_flow(machine: CustodyStateMachine) -> Dict[str, Any]:
    """Mint with stats and a game asset id, then update a stat in the user's wallet."""
    types = machine.types
    asset = machine.mint(
        machine.mint_capability,
        fields={"name": "Cosmetic Skin"},
        stats={"kills": "0", "deaths": "0"},
        game_asset_id="skin-0001",
    )
    initial = read_stats(machine.ledger, asset.asset_id, types.stat_key_type, types.game_asset_id_key_type)

    machine.transfer(asset.asset_id, CustodyDomain.NON_CUSTODIAL_WALLET)
    ticket = machine.create_unlock_ticket(machine.mint_capability, asset.asset_id)
    machine.unlock(asset.asset_id, ticket)
    machine.update_stats(asset.asset_id, {"kills": "10", "assists": "3"})
    machine.lock(asset.asset_id)

    final = read_stats(machine.ledger, asset.asset_id, types.stat_key_type, types.game_asset_id_key_type)
    return {
        "flow": "stats",
        "asset_id": asset.asset_id,
        "initial": initial.to_dict(),
        "final": final.to_dict(),
        "kills": get_stat(machine.ledger, asset.asset_id, "kills", types.stat_key_type),
    }


FLOWS = {
    "custodial": run_custodial_flow,
    "kiosk": run_kiosk_flow,
    "stats": run_stats_flow,
}


# =============================================================================
# CLI
# =============================================================================

class CustodyCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="custody",
            description="Kiosk custody workflows",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"custody {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            action="append",
            default=[],
            help="YAML configuration file (repeatable, later files win)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        flow = self.subparsers.add_parser("flow", help="Run a scripted custody flow")
        flow.add_argument("subcommand", choices=sorted(FLOWS), help="Flow to run")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show resolved configuration (secrets redacted)")
        config_sub.add_parser("validate", help="Validate configuration")

    def _manager(self, args: argparse.Namespace) -> ConfigManager:
        manager = ConfigManager()
        if args.config:
            for path in args.config:
                manager.load_from_file(path)
        else:
            manager.load_defaults()
        return manager

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except ConfigError as e:
            if not parsed.quiet:
                print(f"Configuration error: {e}", file=sys.stderr)
            return 2

        except CustodyError as e:
            logger.error("Flow failed", error_code=e.code, asset_id=e.asset_id,
                         capability_id=e.capability_id, transition=e.transition)
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)
        if cmd == "flow":
            return self._handle_flow(args)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    def _handle_flow(self, args: argparse.Namespace) -> Any:
        config: CustodyConfig = self._manager(args).resolve()
        configure_logging(config.log_level, config.log_format)
        set_correlation_id(generate_correlation_id())

        machine = create_reference_machine(config)
        result = FLOWS[args.subcommand](machine)
        valid, _ = machine.audit.verify_chain()
        result["audit_events"] = len(machine.audit.events())
        result["audit_chain_valid"] = valid
        return result

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._manager(args).resolve().to_dict(redact=True)

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._manager(args).validate()
        return {"valid": len(errors) == 0, "errors": errors}


def main() -> int:
    """CLI entry point."""
    cli = CustodyCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
