"""
Bucket Inbox CLI - Main entry point

This module provides the command-line interface for the Bucket Inbox client.
"""

import asyncio
import logging
import sys
from typing import Optional, List

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from ..auth import SeedVault
from ..client.client import BucketInboxClient
from ..client.sync import RecipientProfileNotFound
from ..config import get_settings
from ..core.keys import InvalidAddress, KeyDerivationError, derive_address_from_mnemonic
from ..core.models import DecryptedMessage, parse_timestamp
from ..core.storage import StorageError

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def format_message(message: DecryptedMessage, own_address: str) -> str:
    timestamp = parse_timestamp(message.ts).astimezone()
    sender = "you" if message.sender == own_address else message.sender[:8]
    body = message.content if message.content is not None else "[red]Unable to decrypt[/red]"
    return f"[dim]{timestamp.strftime('%H:%M:%S')}[/dim] [bold]{sender}[/bold]: {body}"


@click.group()
@click.option('--storage-path', '-s', default=None,
              help='Storage location (local directory or s3://<endpoint-host>)')
@click.option('--profile', '-p', default='default', help='Local profile name for the saved seed')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, storage_path: Optional[str], profile: str, verbose: bool):
    """Bucket Inbox - Encrypted messaging over object storage"""
    ctx.ensure_object(dict)
    settings = get_settings()
    if storage_path:
        settings = settings.model_copy(update={'storage_uri': storage_path})
    ctx.obj['settings'] = settings
    ctx.obj['vault'] = SeedVault(profile)
    setup_logging('DEBUG' if verbose else settings.log_level)

    if verbose:
        console.print(f"[dim]Using storage: {settings.storage_uri}[/dim]")


def resolve_seed(ctx, seed: Optional[str]) -> str:
    if seed:
        return seed
    saved = ctx.obj['vault'].load_seed()
    if saved:
        return saved
    return click.prompt('Seed', hide_input=True)


async def start_session(ctx, seed: Optional[str], display_name: Optional[str] = None) -> BucketInboxClient:
    client = BucketInboxClient(ctx.obj['settings'])
    await client.login(resolve_seed(ctx, seed), display_name=display_name)
    return client


def run(coro) -> None:
    try:
        asyncio.run(coro)
    except (KeyDerivationError, StorageError, RecipientProfileNotFound) as e:
        console.print(f"❌ {e}")
        sys.exit(1)


@cli.command('derive-address')
@click.argument('mnemonic', nargs=-1, required=True)
@click.option('--password', default='', help='Optional mnemonic password')
@click.option('--prefix', default=None, type=int, help='SS58 network prefix')
@click.pass_context
def derive_address(ctx, mnemonic: List[str], password: str, prefix: Optional[int]):
    """Show the SS58 address for a mnemonic"""
    if prefix is None:
        prefix = ctx.obj['settings'].ss58_prefix
    try:
        derived = derive_address_from_mnemonic(' '.join(mnemonic), password, prefix)
    except KeyDerivationError as e:
        console.print(f"❌ {e}")
        sys.exit(1)
    console.print(derived.address)
    console.print(f"[dim]Public key: 0x{derived.public_key_hex}[/dim]")


@cli.command()
@click.option('--seed', default=None, help='Login seed or mnemonic (prompted when omitted)')
@click.option('--display-name', '-n', default=None, help='Display name for a new profile')
@click.option('--remember', is_flag=True, help='Save the seed in the OS keyring')
@click.pass_context
def login(ctx, seed: Optional[str], display_name: Optional[str], remember: bool):
    """Derive keys, create storage and publish the profile"""
    console.print(Panel.fit("🔑 Logging In", style="bold yellow"))

    async def do_login():
        client = await start_session(ctx, seed, display_name)
        info = client.get_user_info()
        console.print(f"✅ Address: [bold]{info['address']}[/bold]")
        console.print(f"   Public key: {info['public_key']}")
        if remember:
            if ctx.obj['vault'].save_seed(client.keypair.seed):
                console.print("✅ Seed saved to keyring")
            else:
                console.print("[yellow]Could not save seed to keyring[/yellow]")
        await client.logout()

    run(do_login())


@cli.command()
@click.pass_context
def forget(ctx):
    """Remove the saved seed from the OS keyring"""
    if ctx.obj['vault'].delete_seed():
        console.print("✅ Seed removed")
    else:
        console.print("No saved seed")


@cli.command()
@click.argument('address', required=False)
@click.option('--seed', default=None, help='Login seed or mnemonic')
@click.pass_context
def profile(ctx, address: Optional[str], seed: Optional[str]):
    """Show a profile (yours by default)"""

    async def show_profile():
        client = await start_session(ctx, seed)
        found = await client.get_profile(address)
        if found is None:
            console.print("No profile published")
        else:
            console.print(Panel.fit(found.display_name, style="bold cyan"))
            console.print(f"Address: {found.address}")
            console.print(f"Public key: {found.pk}")
            if found.about:
                console.print(f"About: {found.about}")
            if found.avatar_url:
                console.print(f"Avatar: {found.avatar_url}")
            console.print(f"[dim]Updated {found.updated_at}[/dim]")
        await client.logout()

    run(show_profile())


@cli.command('set-profile')
@click.option('--seed', default=None, help='Login seed or mnemonic')
@click.option('--display-name', '-n', default=None)
@click.option('--about', default=None)
@click.option('--avatar-url', default=None)
@click.pass_context
def set_profile(ctx, seed: Optional[str], display_name: Optional[str], about: Optional[str],
                avatar_url: Optional[str]):
    """Publish a new version of your profile"""

    async def update():
        client = await start_session(ctx, seed)
        updated = await client.update_profile(display_name, about, avatar_url)
        console.print(f"✅ Profile updated at {updated.updated_at}")
        await client.logout()

    run(update())


@cli.command()
@click.argument('contact')
@click.argument('text', nargs=-1, required=True)
@click.option('--seed', default=None, help='Login seed or mnemonic')
@click.pass_context
def send(ctx, contact: str, text: List[str], seed: Optional[str]):
    """Send a message to CONTACT"""

    async def do_send():
        client = await start_session(ctx, seed)
        message = await client.send_message(contact, ' '.join(text))
        console.print(f"[dim]✓ Message sent ({message.ts})[/dim]")
        await client.logout()

    run(do_send())


@cli.command()
@click.argument('contact')
@click.option('--limit', '-l', default=20, help='Number of messages to show')
@click.option('--seed', default=None, help='Login seed or mnemonic')
@click.pass_context
def history(ctx, contact: str, limit: int, seed: Optional[str]):
    """Show the conversation history with CONTACT"""
    console.print(Panel.fit(f"📜 History: {contact[:16]}...", style="bold cyan"))

    async def show_history():
        client = await start_session(ctx, seed)
        messages = await client.history(contact, limit)
        if not messages:
            console.print("No messages found.")
        else:
            console.print(f"\nShowing {len(messages)} recent messages:\n")
            for message in messages:
                console.print(format_message(message, client.keypair.address))
        await client.logout()

    run(show_history())


@cli.command()
@click.argument('contact')
@click.option('--seed', default=None, help='Login seed or mnemonic')
@click.pass_context
def chat(ctx, contact: str, seed: Optional[str]):
    """Start an interactive conversation with CONTACT"""
    console.print(Panel.fit(f"💬 Chatting with {contact[:16]}...", style="bold magenta"))

    async def run_chat():
        client = await start_session(ctx, seed)
        own = client.keypair.address

        def show(_contact: str, messages: List[DecryptedMessage]):
            for message in messages:
                if message.sender != own:
                    console.print(format_message(message, own))

        try:
            await client.open_conversation(contact, on_messages=show)
        except InvalidAddress as e:
            console.print(f"❌ {e}")
            await client.logout()
            return

        console.print("Type messages and press Enter. Type '/quit' to exit.\n")
        try:
            while True:
                text = (await asyncio.to_thread(input)).strip()
                if text == '/quit':
                    break
                if not text:
                    continue
                try:
                    await client.send_message(contact, text)
                    console.print("[dim]✓ Message sent[/dim]")
                except (StorageError, RecipientProfileNotFound) as e:
                    console.print(f"[red]✗ Failed to send message: {e}[/red]")
        except (EOFError, KeyboardInterrupt):
            pass
        finally:
            await client.logout()
        console.print("\n👋 Goodbye!")

    run(run_chat())


@cli.command()
def version():
    """Show version information"""
    from .. import __version__
    console.print(Panel.fit(f"Bucket Inbox v{__version__}", style="bold blue"))
    console.print("Encrypted messaging over object storage")
    console.print("Licensed under AGPLv3")


def main():
    """Main entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n👋 Goodbye!")
        sys.exit(0)


if __name__ == '__main__':
    main()
