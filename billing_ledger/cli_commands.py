"""
Flask CLI commands for ledger maintenance.

Commands:
- flask ledger init-db: Create the ledger tables
- flask ledger recalc-balances: Recompute customer balances from sales and payments
- flask ledger check-balances: Report (and optionally fix) drifted customer balances
"""

import click
from flask.cli import AppGroup
from billing_ledger import database
from billing_ledger.exceptions import LedgerError
from billing_ledger.services.balance_service import (
    recalculate_customer_balance, recalculate_all_customer_balances,
    detect_balance_mismatches, fix_balance_mismatch
)


ledger_cli = AppGroup('ledger', help='Payment ledger maintenance commands.')


@ledger_cli.command('init-db')
def init_db_command():
    """Create every ledger table that does not exist yet."""
    database.create_all()
    click.echo(click.style('Ledger tables created.', fg='green'))


@ledger_cli.command('recalc-balances')
@click.option('--tenant-id', type=int, required=True, help='Tenant whose customers are recalculated')
@click.option('--customer-id', type=int, default=None, help='Only recalculate this customer')
@click.option('--user-id', type=int, default=None, help='User recorded in the audit trail')
def recalc_balances_command(tenant_id, customer_id, user_id):
    """Recompute customer balances from sales and cleared payments."""
    session = database.get_session()

    try:
        if customer_id:
            recalculate_customer_balance(customer_id, tenant_id, session, user_id=user_id)
            click.echo(f'Customer {customer_id} recalculated.')
        else:
            count = recalculate_all_customer_balances(tenant_id, session, user_id=user_id)
            click.echo(f'{count} customers recalculated.')
    except LedgerError as e:
        raise click.ClickException(e.message)


@ledger_cli.command('check-balances')
@click.option('--tenant-id', type=int, required=True, help='Tenant to check')
@click.option('--fix', is_flag=True, help='Recalculate every customer found out of sync')
@click.option('--user-id', type=int, default=None, help='User recorded in the audit trail when fixing')
def check_balances_command(tenant_id, fix, user_id):
    """List customers whose stored balance differs from sales minus cleared payments."""
    session = database.get_session()
    mismatches = detect_balance_mismatches(session, tenant_id)
    # Release the read transaction before fixing
    session.rollback()

    if not mismatches:
        click.echo(click.style('All customer balances are consistent.', fg='green'))
        return

    for result in mismatches:
        click.echo(
            f"Customer {result['customer_id']} ({result['customer_name']}): "
            f"stored={result['stored_balance']} actual={result['actual_balance']} "
            f"difference={result['difference']}"
        )

    if not fix:
        click.echo(click.style(f'{len(mismatches)} customers out of sync. Run again with --fix to repair.', fg='yellow'))
        return

    fixed = 0
    for result in mismatches:
        if fix_balance_mismatch(tenant_id, result['customer_id'], session, user_id=user_id):
            fixed += 1
    click.echo(click.style(f'{fixed} of {len(mismatches)} customers fixed.', fg='green'))


def init_cli_commands(app):
    """Register CLI commands with Flask app."""
    app.cli.add_command(ledger_cli)
