# Neural Core CLI
import asyncio
import click


@click.group()
def cli():
    """Neural Core CLI"""
    pass


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to API__HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to API__PORT)")
def api(host, port):
    """Run the API server"""
    click.echo("🚀 Starting Neural Core API server...")
    from api.main import run as run_api
    run_api(host=host, port=port)


@cli.command("init-db")
def init_db():
    """Create the ledger tables"""
    from app.containers import AppContainer

    async def _init():
        db_manager = AppContainer().db_manager()
        try:
            await db_manager.init()
        finally:
            await db_manager.shutdown()

    asyncio.run(_init())
    click.echo("✅ Database initialized")


@cli.command("seed-user")
@click.argument("user_id")
@click.option("--email", default=None, help="Contact email")
@click.option("--account-type", type=click.Choice(["paper", "live"]), default="paper",
              show_default=True, help="Trading account to open")
def seed_user(user_id, email, account_type):
    """Register a user and open their trading account"""
    from app.containers import AppContainer

    async def _seed():
        container = AppContainer()
        ledger = container.deposit_ledger()
        try:
            await container.db_manager().init()
            await ledger.ensure_user(user_id, email=email)
            return await ledger.open_trading_account(user_id, account_type)
        finally:
            await container.db_manager().shutdown()

    account = asyncio.run(_seed())
    click.echo(f"🌱 User {user_id} ready: {account.account_type.value} account "
               f"with balance {account.balance:.2f}")


if __name__ == "__main__":
    cli()
