"""CLI utility for ladder maintenance: rating replay, ledger audit and standings rebuild."""

import argparse
import json

from courtladder.app import create_app
from courtladder.services.rating_engine import audit_ledger, replay_pending_rating_updates
from courtladder.services.standings import compute_standings, recompute_all_standings


def _build_parser():
    parser = argparse.ArgumentParser(
        description='Repair and verify derived ladder data (ratings and league standings).',
    )
    parser.add_argument(
        'command',
        choices=['replay-ratings', 'audit-ledger', 'recompute-standings'],
        help='replay-ratings applies accepted results whose rating never committed; '
             'audit-ledger compares every rating with its ledger; '
             'recompute-standings snapshots league tables.',
    )
    parser.add_argument(
        '--league',
        type=int,
        help='Only recompute this league (recompute-standings).',
    )
    parser.add_argument(
        '--scope',
        choices=['season', 'all'],
        help='Standings scope for --league (default: the league mode default).',
    )
    parser.add_argument(
        '--env',
        default='development',
        choices=['development', 'testing', 'production'],
        help='App config environment to use (default: development).',
    )
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    app = create_app(args.env)

    with app.app_context():
        if args.command == 'replay-ratings':
            applied = replay_pending_rating_updates()
            print(json.dumps({'applied': applied}, indent=2))
            return 0

        if args.command == 'audit-ledger':
            mismatches = audit_ledger()
            print(json.dumps({'ok': not mismatches, 'mismatches': mismatches}, indent=2))
            return 1 if mismatches else 0

        if args.league is not None:
            result = compute_standings(args.league, scope=args.scope)
            print(json.dumps({
                'league_id': result.league_id,
                'scope': result.scope,
                'snapshot_id': result.snapshot_id,
                'computed_at': result.computed_at,
                'players': len(result.rows),
            }, indent=2))
            return 0

        summary = recompute_all_standings()
        print(json.dumps(summary, indent=2))
        return 1 if summary['failed'] else 0


if __name__ == '__main__':
    raise SystemExit(main())
