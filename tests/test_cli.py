from click.testing import CliRunner

from bucket_inbox import __version__
from bucket_inbox.cli.main import cli
from bucket_inbox.core.keys import derive_keypair

DEV_PHRASE = "bottom drive obey lake curtain smoke basket hold race lonely fit walk"


def test_derive_address():
    result = CliRunner().invoke(cli, ['derive-address', *DEV_PHRASE.split()])
    assert result.exit_code == 0
    assert "5DfhGyQdFobKM8NsWvEeAKk5EQQgYe9AydgJ7rMB6E1EqRzV" in result.output


def test_derive_address_rejects_bad_mnemonic():
    result = CliRunner().invoke(cli, ['derive-address', 'not', 'a', 'mnemonic'])
    assert result.exit_code == 1


def test_version():
    result = CliRunner().invoke(cli, ['version'])
    assert result.exit_code == 0
    assert f"v{__version__}" in result.output


def test_login_then_show_profile(tmp_path):
    runner = CliRunner()
    storage = str(tmp_path / "storage")
    address = derive_keypair("alice test seed").address

    result = runner.invoke(cli, ['-s', storage, 'login', '--seed', 'alice test seed',
                                 '--display-name', 'Alice'])
    assert result.exit_code == 0
    assert address in result.output

    result = runner.invoke(cli, ['-s', storage, 'profile', '--seed', 'alice test seed'])
    assert result.exit_code == 0
    assert "Alice" in result.output


def test_send_to_unknown_recipient_fails(tmp_path):
    storage = str(tmp_path / "storage")
    bob = derive_keypair("bob test seed").address
    result = CliRunner().invoke(cli, ['-s', storage, 'send', '--seed', 'alice test seed', bob, 'hi'])
    assert result.exit_code == 1
    assert "Recipient profile not found" in result.output
