"""
Cadence CLI - Command line interface for running delivery jobs by hand.

Usage:
    cadence --help                           Show all commands
    cadence tick                             Run one delivery tick
    cadence sweep                            Retry failed deliveries once
    cadence enroll jane@corp.com             Enroll a recipient in the coaching series
    cadence enroll jane@corp.com --welcome   Enroll and send the welcome email now
    cadence send-now jane@corp.com           Send the next coaching email immediately
"""

import asyncio

import typer

app = typer.Typer(
    name="cadence",
    help="Cadence CLI - Weekly coaching delivery scheduler",
    no_args_is_help=True,
)


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _parse_series(series: str):
    from cadence.models.subscription import SeriesKind

    try:
        return SeriesKind(series)
    except ValueError:
        _print_error(f"Unknown series: {series}")
        typer.echo("   Valid options: " + ", ".join(k.value for k in SeriesKind))
        raise typer.Exit(1)


async def _find_recipient_id(email: str):
    from sqlalchemy import select

    from cadence.core.database import AsyncSessionLocal
    from cadence.models.recipient import Recipient

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Recipient.id).where(Recipient.email == email))
        return result.scalar_one_or_none()


@app.command()
def tick(
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", help="Rows per batch"),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", help="Concurrent sends"),
):
    """Run one delivery tick over every due coaching subscription."""
    from cadence.jobs.delivery import main

    result = asyncio.run(main(batch_size=batch_size, max_concurrency=concurrency))
    typer.echo(f"\nProcessed {result.processed} subscription(s) in {result.batches} batch(es)")
    for outcome, count in result.outcomes.items():
        if count:
            typer.echo(f"  {outcome}: {count}")


@app.command()
def sweep():
    """Retry every delivery recorded as retry_scheduled, once."""
    from cadence.jobs.retry_sweep import main

    result = asyncio.run(main())
    typer.echo(f"\nExamined {result.examined} attempt(s)")
    for name, count in result.as_dict().items():
        if count and name != "examined":
            typer.echo(f"  {name}: {count}")


@app.command()
def enroll(
    email: str = typer.Argument(..., help="Recipient email address"),
    series: str = typer.Option("coaching", "--series", "-s", help="Series: coaching or welcome"),
    timezone: str | None = typer.Option(None, "--timezone", "-z", help="IANA timezone override"),
    welcome: bool = typer.Option(
        False, "--welcome", "-w", help="Also enroll in the welcome series and send it now"
    ),
):
    """Enroll a recipient in a delivery series."""
    from cadence.core.database import AsyncSessionLocal
    from cadence.core.errors import InvariantViolation
    from cadence.core.logging import setup_logging
    from cadence.models.subscription import SeriesKind
    from cadence.services.delivery import send_immediate
    from cadence.services.lifecycle import enroll as enroll_recipient
    from cadence.services.metrics import flush_metrics

    setup_logging()
    series_kind = _parse_series(series)

    async def run():
        recipient_id = await _find_recipient_id(email)
        if recipient_id is None:
            _print_error(f"No recipient with email {email}")
            raise typer.Exit(1)

        kinds = [series_kind]
        if welcome and series_kind != SeriesKind.WELCOME:
            kinds.insert(0, SeriesKind.WELCOME)

        async with AsyncSessionLocal() as db:
            try:
                for kind in kinds:
                    subscription = await enroll_recipient(db, recipient_id, kind, timezone=timezone)
                    _print_success(
                        f"{kind.value}: next delivery at {subscription.next_eligible_time:%Y-%m-%d %H:%M} UTC"
                    )
                await db.commit()
            except InvariantViolation as e:
                _print_error(str(e))
                raise typer.Exit(1)

        if welcome:
            if await send_immediate(recipient_id, SeriesKind.WELCOME):
                _print_success("Welcome email sent")
            else:
                _print_warning("Welcome email not sent (see logs)")
            await flush_metrics()

    asyncio.run(run())


@app.command("send-now")
def send_now(
    email: str = typer.Argument(..., help="Recipient email address"),
    series: str = typer.Option("coaching", "--series", "-s", help="Series: coaching or welcome"),
):
    """Send the next delivery of an active subscription immediately."""
    from cadence.core.logging import setup_logging
    from cadence.services.delivery import send_immediate
    from cadence.services.metrics import flush_metrics

    setup_logging()
    series_kind = _parse_series(series)

    async def run() -> bool:
        recipient_id = await _find_recipient_id(email)
        if recipient_id is None:
            _print_error(f"No recipient with email {email}")
            raise typer.Exit(1)
        sent = await send_immediate(recipient_id, series_kind)
        await flush_metrics()
        return sent

    if asyncio.run(run()):
        _print_success(f"Sent {series_kind.value} delivery to {email}")
    else:
        _print_error("Nothing sent (no active subscription, already sent today, or failed)")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
