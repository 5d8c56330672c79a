import argparse
import getpass
import json
import sys

from app import app, run_sweep
from auth import create_user
from errors import GymError
from reports import ledger_csv_bytes, monthly_revenue, yearly_revenue


def cmd_create_admin(args):
    password = args.password or getpass.getpass('Password: ')
    user = create_user(args.username, password, role='admin')
    print('Created admin', user.username, 'id=', user.id)


def cmd_sweep(args):
    result = run_sweep()
    print(json.dumps(result))


def cmd_revenue(args):
    if args.month:
        result = monthly_revenue(args.year, args.month)
    else:
        result = yearly_revenue(args.year)
    print(json.dumps(result, indent=2))


def cmd_export_ledger(args):
    data = ledger_csv_bytes(args.start, args.end)
    with open(args.out, 'wb') as fh:
        fh.write(data)
    print('Exported to', args.out)


def build_parser():
    parser = argparse.ArgumentParser(description='Gym membership back office')
    sub = parser.add_subparsers(dest='cmd')
    a = sub.add_parser('create-admin')
    a.add_argument('--username', required=True)
    a.add_argument('--password')
    a.set_defaults(func=cmd_create_admin)
    s = sub.add_parser('sweep', help='expire lapsed memberships and payment orders now')
    s.set_defaults(func=cmd_sweep)
    r = sub.add_parser('revenue')
    r.add_argument('--year', type=int, required=True)
    r.add_argument('--month', type=int)
    r.set_defaults(func=cmd_revenue)
    e = sub.add_parser('export-ledger')
    e.add_argument('--out', default='membership_ledger.csv')
    e.add_argument('--start')
    e.add_argument('--end')
    e.set_defaults(func=cmd_export_ledger)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, 'func', None):
        parser.print_help()
        return 1
    with app.app_context():
        try:
            args.func(args)
        except GymError as exc:
            print('error:', exc.message, file=sys.stderr)
            return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
