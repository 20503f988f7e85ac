"""
Clear Ledger - Server Launcher
Starts the Flask API, optionally seeding a demo user first.

Usage:
    python launcher.py            # serve on CLEARLEDGER_HOST:CLEARLEDGER_PORT
    python launcher.py --demo     # seed 'demo-user' with ~4 months of data
"""
import argparse
import logging
import os

from dotenv import load_dotenv

from clearledger import create_app
from clearledger.demo_data import generate_demo_data

DEMO_USER_ID = 'demo-user'


def main():
    load_dotenv()
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    parser = argparse.ArgumentParser(description="Run the Clear Ledger API server.")
    parser.add_argument('--demo', action='store_true', help="seed a demo user before serving")
    parser.add_argument('--seed', type=int, default=None, help="random seed for demo data")
    args = parser.parse_args()

    host = os.getenv('CLEARLEDGER_HOST', '127.0.0.1')
    port = int(os.getenv('CLEARLEDGER_PORT', '5000'))

    print("=" * 60)
    print(" Clear Ledger")
    print("=" * 60)
    print("\nStarting server...")

    app = create_app()

    if args.demo:
        engine = app.config['ENGINE']
        if engine.get_user(DEMO_USER_ID):
            print(f"\n[DEMO] User '{DEMO_USER_ID}' already exists, skipping seed")
        else:
            summary = generate_demo_data(engine, DEMO_USER_ID, seed=args.seed)
            print(f"\n[DEMO] Seeded '{DEMO_USER_ID}': {summary['paychecks']} paychecks, "
                  f"{summary['expenses']} expenses ({summary['date_range']})")
            print(f"[DEMO] Send header {app.config['USER_HEADER']}: {DEMO_USER_ID}")

    print(f"\nServer running at http://{host}:{port}/api")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60)

    app.run(host=host, port=port, debug=False)


if __name__ == '__main__':
    main()
