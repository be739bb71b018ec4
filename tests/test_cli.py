"""CLI tests: account lifecycle, session keys, signing and key-handling hardening."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account
from eth_utils import to_checksum_address

from warden.cli import main


@pytest.fixture
def env(tmp_path):
    return {"WARDEN_HOME": str(tmp_path / "home"), "WARDEN_AUDIT_HMAC_KEY": "test-key"}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def account_address(runner, env, owner):
    result = runner.invoke(main, ["account", "create", owner.address, "0"], env=env)
    assert result.exit_code == 0, result.output
    return result.output.split("Account created: ")[1].split()[0]


def _key_input(account) -> str:
    return account.key.hex() + "\n"


class TestKeyHandling:
    def test_register_rejects_raw_key_on_argv(self, runner, env, owner, account_address):
        result = runner.invoke(
            main,
            [
                "session", "register", account_address, Account.create().address,
                "--caller-key", owner.key.hex(),
            ],
            env=env,
        )
        assert result.exit_code != 0
        assert "Refusing --caller-key from argv" in result.output

    def test_unsafe_flag_allows_key_on_argv(self, runner, env, owner, account_address):
        result = runner.invoke(
            main,
            [
                "session", "register", account_address, Account.create().address,
                "--limit", "1", "--caller-key", owner.key.hex(), "--unsafe-allow-key-arg",
            ],
            env=env,
        )
        assert result.exit_code == 0, result.output

    def test_sign_rejects_raw_key_on_argv(self, runner, env, owner, account_address):
        result = runner.invoke(
            main,
            [
                "request", "sign", account_address, "--target", owner.address,
                "--nonce", "0", "--signer-key", owner.key.hex(),
            ],
            env=env,
        )
        assert result.exit_code != 0
        assert "Refusing --signer-key from argv" in result.output


class TestAccountCommands:
    def test_address_predicts_created_account(self, runner, env, owner):
        predicted = runner.invoke(main, ["account", "address", owner.address, "0"], env=env)
        assert "not deployed" in predicted.output
        created = runner.invoke(main, ["account", "create", owner.address, "0"], env=env)
        assert predicted.output.split()[0] in created.output

    def test_create_is_idempotent(self, runner, env, owner, account_address):
        again = runner.invoke(main, ["account", "create", owner.address, "0"], env=env)
        assert again.exit_code == 0
        assert f"already deployed: {account_address}" in again.output

    def test_show(self, runner, env, owner, account_address):
        result = runner.invoke(main, ["account", "show", account_address], env=env)
        assert result.exit_code == 0
        assert owner.address.lower() in result.output
        assert "Session keys: 0" in result.output

    def test_show_unknown(self, runner, env):
        result = runner.invoke(main, ["account", "show", "0x" + "99" * 20], env=env)
        assert result.exit_code == 1
        assert "No contract deployed" in result.output


class TestSessionCommands:
    def test_register_and_status(self, runner, env, owner, account_address):
        key = Account.create()
        target = "0x" + "aa" * 20
        result = runner.invoke(
            main,
            [
                "session", "register", account_address, key.address,
                "--valid-for", "2h", "--limit", "3", "--whitelist", target,
            ],
            input=_key_input(owner),
            env=env,
        )
        assert result.exit_code == 0, result.output
        assert "Session key registered" in result.output

        status = runner.invoke(main, ["session", "status", account_address, key.address], env=env)
        data = json.loads(status.output)
        assert data["active"] is True
        assert data["limit"] == "3"
        assert data["whitelist"] == [target]
        assert data["enforce_whitelist"] is True
        assert data["valid_until"] - data["valid_after"] == 7200

    def test_register_by_stranger_denied(self, runner, env, account_address):
        result = runner.invoke(
            main,
            ["session", "register", to_checksum_address(account_address), Account.create().address],
            input=_key_input(Account.create()),
            env=env,
        )
        assert result.exit_code == 1
        assert "not authorized" in result.output

        audit = runner.invoke(main, ["audit", "--account", account_address], env=env)
        assert "operation_denied" in audit.output

    def test_revoke_by_stranger_audited(self, runner, env, owner, account_address):
        key = Account.create()
        runner.invoke(
            main, ["session", "register", account_address, key.address, "--limit", "1"],
            input=_key_input(owner), env=env,
        )
        result = runner.invoke(
            main, ["session", "revoke", account_address, key.address], input=_key_input(Account.create()), env=env,
        )
        assert result.exit_code == 1

        audit = runner.invoke(main, ["audit", "--account", to_checksum_address(account_address)], env=env)
        last = audit.output.strip().splitlines()[-1]
        assert last.startswith("❌")
        assert "operation_denied" in last

    def test_revoke(self, runner, env, owner, account_address):
        key = Account.create()
        runner.invoke(
            main, ["session", "register", account_address, key.address, "--limit", "1"],
            input=_key_input(owner), env=env,
        )
        result = runner.invoke(
            main, ["session", "revoke", account_address, key.address], input=_key_input(key), env=env,
        )
        assert result.exit_code == 0, result.output
        status = runner.invoke(main, ["session", "status", account_address, key.address], env=env)
        assert status.exit_code == 1


class TestOwnerCommands:
    def test_two_phase_transfer(self, runner, env, owner, account_address):
        new_owner = Account.create()
        proposed = runner.invoke(
            main, ["owner", "propose", account_address, new_owner.address], input=_key_input(owner), env=env,
        )
        assert proposed.exit_code == 0, proposed.output

        show = runner.invoke(main, ["account", "show", account_address], env=env)
        assert f"Owner:    {owner.address.lower()}" in show.output
        assert f"Pending:  {new_owner.address.lower()}" in show.output

        accepted = runner.invoke(main, ["owner", "accept", account_address], input=_key_input(new_owner), env=env)
        assert accepted.exit_code == 0, accepted.output
        show = runner.invoke(main, ["account", "show", account_address], env=env)
        assert f"Owner:    {new_owner.address.lower()}" in show.output

    def test_accept_without_proposal_audited(self, runner, env, account_address):
        result = runner.invoke(
            main, ["owner", "accept", account_address], input=_key_input(Account.create()), env=env,
        )
        assert result.exit_code == 1
        audit = runner.invoke(main, ["audit", "--account", account_address], env=env)
        assert "operation_denied" in audit.output.strip().splitlines()[-1]


class TestSigning:
    @pytest.mark.parametrize("mode", ["typed_data", "personal", "raw"])
    def test_signed_request_passes_signature_check(self, runner, env, owner, account_address, mode):
        signed = runner.invoke(
            main,
            [
                "request", "sign", account_address,
                "--target", "0x" + "aa" * 20, "--value", "5", "--nonce", "0", "--mode", mode,
            ],
            input=_key_input(owner),
            env=env,
        )
        assert signed.exit_code == 0, signed.output
        request = json.loads(signed.output[signed.output.index("{"):])
        assert request["calls"][0]["value"] == "5"

        check = runner.invoke(
            main, ["signature", "check", account_address, request["request_hash"], request["signature"]], env=env,
        )
        assert check.exit_code == 0
        assert "0x1626ba7e" in check.output

    def test_signature_check_rejects_stranger(self, runner, env, account_address):
        signed = runner.invoke(
            main,
            ["request", "sign", account_address, "--target", "0x" + "aa" * 20, "--nonce", "0"],
            input=_key_input(Account.create()),
            env=env,
        )
        request = json.loads(signed.output[signed.output.index("{"):])
        check = runner.invoke(
            main, ["signature", "check", account_address, request["request_hash"], request["signature"]], env=env,
        )
        assert check.exit_code == 1
        assert "0xffffffff" in check.output


class TestSubmit:
    def _sign(self, runner, env, signer, account_address, *extra):
        result = runner.invoke(
            main,
            ["request", "sign", account_address, "--target", "0x" + "aa" * 20, *extra],
            input=_key_input(signer),
            env=env,
        )
        assert result.exit_code == 0, result.output
        return result.output[result.output.index("{"):]

    def test_sign_submit_round(self, runner, env, owner, account_address):
        first = self._sign(runner, env, owner, account_address)
        assert json.loads(first)["nonce"] == 0

        submitted = runner.invoke(main, ["request", "submit"], input=first, env=env)
        assert submitted.exit_code == 0, submitted.output
        receipt = json.loads(submitted.output[submitted.output.index("{"):])
        assert receipt["success"] is True
        assert receipt["request_hash"] == json.loads(first)["request_hash"]

        second = self._sign(runner, env, owner, account_address)
        assert json.loads(second)["nonce"] == 1

        audit = runner.invoke(main, ["audit", "--account", account_address], env=env)
        assert "request_submitted" in audit.output

    def test_replayed_request_refused(self, runner, env, owner, account_address):
        request = self._sign(runner, env, owner, account_address)
        assert runner.invoke(main, ["request", "submit"], input=request, env=env).exit_code == 0

        again = runner.invoke(main, ["request", "submit"], input=request, env=env)
        assert again.exit_code == 1
        assert "Invalid nonce" in again.output
        audit = runner.invoke(main, ["audit", "--account", account_address], env=env)
        assert "operation_denied" in audit.output.strip().splitlines()[-1]

    def test_stranger_signature_fails_without_spending_nonce(self, runner, env, account_address):
        request = self._sign(runner, env, Account.create(), account_address, "--nonce", "0")
        result = runner.invoke(main, ["request", "submit"], input=request, env=env)
        assert result.exit_code == 1
        assert json.loads(result.output[result.output.index("{"):])["success"] is False

        signed = self._sign(runner, env, Account.create(), account_address)
        assert json.loads(signed)["nonce"] == 0

    def test_submit_from_file(self, runner, env, owner, account_address, tmp_path):
        path = tmp_path / "request.json"
        path.write_text(self._sign(runner, env, owner, account_address))
        result = runner.invoke(main, ["request", "submit", str(path)], env=env)
        assert result.exit_code == 0, result.output

    def test_malformed_json_rejected(self, runner, env):
        result = runner.invoke(main, ["request", "submit"], input="[1, 2]", env=env)
        assert result.exit_code == 1
        assert "Failed to submit request" in result.output


def test_audit_lists_events(runner, env, owner, account_address):
    result = runner.invoke(main, ["audit"], env=env)
    assert result.exit_code == 0
    assert "account_created" in result.output
