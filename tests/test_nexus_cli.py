"""
NEXUS CLI Test Suite

Drives `NexusCLI.run` end to end against state and audit files in a
temporary directory (conftest chdirs there, so the default storage paths
land in it).

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest
import yaml

from tools.nexus.cli import NexusCLI, OutputFormat, format_output


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


OWNER = addr(0xA11CE)
ALICE = addr(0xA1)
BOB = addr(0xB0B)


@pytest.fixture
def nexus(capsys):
    """Run the CLI; returns (exit_code, parsed_stdout_or_text, stderr)."""
    def _run(*argv):
        code = NexusCLI().run(list(argv))
        out, err = capsys.readouterr()
        try:
            parsed = json.loads(out) if out.strip() else None
        except json.JSONDecodeError:
            parsed = out.strip()
        return code, parsed, err
    return _run


@pytest.fixture
def deployed(nexus, tmp_path):
    (tmp_path / "crew.csv").write_text(f"address\n{ALICE}\n{OWNER}\n", encoding="utf-8")
    code, out, err = nexus(
        "--caller", OWNER, "deploy",
        "--max-total", "10", "--max-per-wallet", "3", "--founding-crew", "5",
        "--allowlist", "crew.csv",
    )
    assert code == 0, err
    return out


# =============================================================================
# DEPLOY
# =============================================================================

class TestDeploy:

    def test_deploy_writes_state(self, deployed, tmp_path):
        assert deployed["owner"] == OWNER
        assert deployed["max_total_issued"] == 10
        assert deployed["base_uri"] == "ipfs://xyz/"
        assert len(deployed["allow_list_root"]) == 64
        assert (tmp_path / "nexus-state.json").exists()
        assert (tmp_path / "nexus-audit.jsonl").exists()

    def test_refuses_to_overwrite(self, deployed, nexus):
        code, _, err = nexus("--caller", OWNER, "deploy")
        assert code == 1
        assert "already exists" in err

    def test_force_overwrites(self, deployed, nexus):
        code, out, _ = nexus("--caller", OWNER, "deploy", "--max-total", "20", "--force")
        assert code == 0
        assert out["max_total_issued"] == 20

    def test_defaults_come_from_config(self, nexus, tmp_path):
        (tmp_path / "nexus.yaml").write_text("sale:\n  max_per_wallet: 7\n", encoding="utf-8")
        code, out, _ = nexus("--caller", OWNER, "deploy")
        assert code == 0
        assert out["max_per_wallet"] == 7
        assert out["max_total_issued"] == 10000

    def test_no_state(self, nexus):
        code, _, err = nexus("owner", "get")
        assert code == 1
        assert "nexus deploy" in err

    def test_no_caller(self, nexus):
        code, _, err = nexus("deploy")
        assert code == 3
        assert "caller" in err


# =============================================================================
# SETTINGS
# =============================================================================

class TestSettings:

    def test_boarding_false_means_false(self, deployed, nexus):
        code, out, _ = nexus("--caller", OWNER, "boarding", "set", "true")
        assert out == {"general_open": True}
        code, out, _ = nexus("--caller", OWNER, "boarding", "set", "false")
        assert code == 0
        assert out == {"general_open": False}
        _, out, _ = nexus("boarding", "get")
        assert out == {"general_open": False}

    def test_bad_bool(self, deployed, nexus):
        code, _, _ = nexus("--caller", OWNER, "boarding", "set", "maybe")
        assert code == 1

    def test_price_in_ether(self, deployed, nexus):
        code, out, _ = nexus("--caller", OWNER, "price", "set", "0.05", "--phase", "general")
        assert code == 0
        assert out["general"]["wei"] == "50000000000000000"
        _, out, _ = nexus("price", "get")
        assert out["presale"]["wei"] == "70000000000000000"
        assert out["general"]["wei"] == "50000000000000000"

    def test_uri_and_limit(self, deployed, nexus):
        assert nexus("--caller", OWNER, "uri", "set", "ipfs://abc/")[0] == 0
        assert nexus("uri", "get")[1] == {"base_uri": "ipfs://abc/"}
        assert nexus("--caller", OWNER, "limit", "set", "5")[0] == 0
        assert nexus("limit", "get")[1] == {"max_per_wallet": 5}

    def test_non_owner_rejected(self, deployed, nexus):
        code, _, err = nexus("--caller", BOB, "uri", "set", "ipfs://evil/")
        assert code == 2
        assert "Error: Ownable: caller is not the owner" in err
        assert nexus("uri", "get")[1] == {"base_uri": "ipfs://xyz/"}

    def test_zero_withdrawal_address_rejected(self, deployed, nexus):
        code, _, _ = nexus("--caller", OWNER, "withdrawal", "set", "0x" + "0" * 40)
        assert code == 2
        assert nexus("withdrawal", "get")[1] == {"withdrawal_address": OWNER}

    def test_transfer_ownership(self, deployed, nexus):
        assert nexus("--caller", OWNER, "owner", "transfer", BOB)[0] == 0
        assert nexus("owner", "get")[1] == {"owner": BOB}
        assert nexus("--caller", OWNER, "boarding", "set", "true")[0] == 2

    def test_text_format(self, deployed, nexus):
        code, out, _ = nexus("--format", "text", "owner", "get")
        assert code == 0
        assert out == OWNER


# =============================================================================
# ISSUANCE
# =============================================================================

class TestIssuance:

    def test_mint_while_closed(self, deployed, nexus):
        code, _, err = nexus("--caller", BOB, "mint", "--quantity", "1")
        assert code == 2
        assert "Error: General boarding starts soon!" in err

    def test_general_mint_and_wallet_limit(self, deployed, nexus):
        nexus("--caller", OWNER, "boarding", "set", "true")
        code, out, _ = nexus("--caller", BOB, "mint", "--quantity", "2")
        assert code == 0
        assert out["token_ids"] == [1, 2]
        assert out["amount_charged"] == "180000000000000000"

        code, _, err = nexus("--caller", BOB, "mint", "--quantity", "2")
        assert code == 2
        assert "Above the per-wallet token limit" in err

    def test_underpayment(self, deployed, nexus):
        nexus("--caller", OWNER, "boarding", "set", "true")
        code, _, err = nexus("--caller", BOB, "mint", "--quantity", "2", "--price", "0.17")
        assert code == 2
        assert "Not enough ether sent" in err

    def test_presale_with_proof_artifact(self, deployed, nexus, tmp_path):
        code, out, _ = nexus("allowlist", "build", "crew.csv", "--out", "proofs.json")
        assert code == 0
        assert out["root"] == deployed["allow_list_root"]

        nexus("--caller", OWNER, "preboarding", "set", "true")
        code, out, err = nexus(
            "--caller", ALICE, "mint", "--proof-file", "proofs.json", "--category", "Captain",
        )
        assert code == 0, err
        assert out["phase"] == "presale"
        assert out["category"] == "captain"
        assert out["amount_charged"] == "70000000000000000"

    def test_presale_outsider(self, deployed, nexus, tmp_path):
        nexus("allowlist", "build", "crew.csv", "--out", "proofs.json")
        code, out, _ = nexus("allowlist", "proof", "crew.csv", ALICE)
        (tmp_path / "alice.json").write_text(json.dumps(out["proof"]), encoding="utf-8")

        nexus("--caller", OWNER, "preboarding", "set", "true")
        code, _, err = nexus("--caller", BOB, "mint", "--proof-file", "alice.json")
        assert code == 2
        assert "Not on the preboarding list!" in err

    def test_unknown_category(self, deployed, nexus):
        nexus("--caller", OWNER, "boarding", "set", "true")
        code, _, err = nexus("--caller", BOB, "mint", "--category", "pirate")
        assert code == 2
        assert "Unknown character!" in err

    def test_gift_token_uri_royalty(self, deployed, nexus):
        code, out, _ = nexus("--caller", OWNER, "gift", "--address", BOB, "--tokens", "2")
        assert code == 0
        assert out["kind"] == "gift"

        assert nexus("token-uri", "--token-id", "2")[1] == {"token_uri": "ipfs://xyz/2.json"}
        code, _, err = nexus("token-uri", "--token-id", "3")
        assert code == 2
        assert "nonexistent token" in err

        _, out, _ = nexus("royalty", "--token-id", "1", "--sale-price", "1.0")
        assert out["amount"]["wei"] == "70000000000000000"
        assert out["royalty_bps"] == 700

    def test_gift_by_non_owner(self, deployed, nexus):
        code, _, err = nexus("--caller", BOB, "gift", "--address", BOB, "--tokens", "1")
        assert code == 2
        assert "Ownable: caller is not the owner" in err

    def test_withdraw(self, deployed, nexus):
        nexus("--caller", OWNER, "boarding", "set", "true")
        nexus("--caller", BOB, "mint", "--quantity", "1")
        nexus("--caller", OWNER, "withdrawal", "set", ALICE)
        code, out, _ = nexus("--caller", OWNER, "withdraw")
        assert code == 0
        assert out == {"to": ALICE, "amount": {"wei": "90000000000000000", "ether": "0.09"}}
        assert nexus("state", "show")[1]["balance"] == "0"

    def test_each_command_bumps_state_revision(self, deployed, nexus, tmp_path):
        path = tmp_path / "nexus-state.json"
        assert json.loads(path.read_text(encoding="utf-8"))["revision"] == 1
        nexus("--caller", OWNER, "boarding", "set", "true")
        nexus("--caller", BOB, "mint", "--quantity", "1")
        assert json.loads(path.read_text(encoding="utf-8"))["revision"] == 3
        assert (tmp_path / "nexus-state.json.lock").exists()

    def test_rejected_mint_leaves_state_alone(self, deployed, nexus, tmp_path):
        path = tmp_path / "nexus-state.json"
        before = path.read_bytes()
        assert nexus("--caller", BOB, "mint", "--quantity", "1")[0] == 2
        assert path.read_bytes() == before


# =============================================================================
# AUDIT, KEYS, CONFIG
# =============================================================================

class TestAudit:

    def test_show_and_verify(self, deployed, nexus):
        nexus("--caller", OWNER, "boarding", "set", "true")
        nexus("--caller", BOB, "mint", "--quantity", "5")

        code, out, _ = nexus("audit", "show")
        assert code == 0
        assert [e["event_type"] for e in out] == ["deployed", "phase_changed", "issuance_rejected"]

        code, out, _ = nexus("audit", "verify")
        assert code == 0
        assert out == {"valid": True, "events": 3}

    def test_tampered_log(self, deployed, nexus, tmp_path):
        path = tmp_path / "nexus-audit.jsonl"
        nexus("--caller", OWNER, "boarding", "set", "true")
        lines = path.read_text(encoding="utf-8").splitlines()
        event = json.loads(lines[0])
        event["actor"] = BOB
        lines[0] = json.dumps(event)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        code, _, err = nexus("audit", "verify")
        assert code == 4
        assert "index 0" in err


class TestKeys:

    def test_keygen_and_signed_commands(self, nexus, tmp_path):
        code, key, _ = nexus("keygen", "--out", "op.jwk")
        assert code == 0
        assert (tmp_path / "op.jwk").stat().st_mode & 0o777 == 0o600

        code, out, _ = nexus("--key", "op.jwk", "deploy")
        assert code == 0
        assert out["owner"] == key["address"]

        assert nexus("--key", "op.jwk", "boarding", "set", "true")[0] == 0
        code, _, _ = nexus("--key", "op.jwk", "--caller", BOB, "boarding", "set", "false")
        assert code == 3

    def test_caller_is_key_address(self, nexus, monkeypatch, tmp_path):
        _, key, _ = nexus("keygen", "--out", "op.jwk")
        monkeypatch.setenv("NEXUS_KEY_PATH", str(tmp_path / "op.jwk"))
        monkeypatch.setenv("NEXUS_REQUIRE_SIGNATURES", "true")
        code, out, _ = nexus("deploy")
        assert code == 0
        assert out["owner"] == key["address"]
        assert nexus("--caller", key["address"], "boarding", "set", "true")[0] == 0

    def test_unusable_key_file(self, nexus, tmp_path):
        (tmp_path / "bad.jwk").write_text("{}", encoding="utf-8")
        code, _, _ = nexus("--key", "bad.jwk", "deploy")
        assert code == 1

    def test_keygen_refuses_overwrite(self, nexus):
        nexus("keygen", "--out", "op.jwk")
        code, _, _ = nexus("keygen", "--out", "op.jwk")
        assert code == 1

    def test_signatures_required(self, deployed, nexus, monkeypatch):
        monkeypatch.setenv("NEXUS_REQUIRE_SIGNATURES", "true")
        code, _, err = nexus("--caller", OWNER, "boarding", "set", "true")
        assert code == 3
        assert "--key" in err


class TestConfigCommands:

    def test_get(self, nexus):
        code, out, _ = nexus("config", "get", "sale.max_per_wallet")
        assert code == 0
        assert out == {"path": "sale.max_per_wallet", "value": 3}

    def test_validate(self, nexus):
        assert nexus("config", "validate")[1] == {"valid": True, "errors": []}

    def test_explicit_config_file(self, nexus, tmp_path):
        (tmp_path / "alt.yaml").write_text("storage:\n  state_path: alt-state.json\n", encoding="utf-8")
        code, _, _ = nexus("--config", "alt.yaml", "--caller", OWNER, "deploy")
        assert code == 0
        assert (tmp_path / "alt-state.json").exists()


def test_format_output_yaml():
    text = format_output({"owner": OWNER, "size": 2}, OutputFormat.YAML)
    assert yaml.safe_load(text) == {"owner": OWNER, "size": 2}
