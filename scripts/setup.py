#!/usr/bin/env python3
"""
Setup script for the Copyright Claim Monitor.
Generates the token encryption key, writes a sample .env and validates configuration.
"""

import sys
import argparse
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from shared_lib.encryption import generate_encryption_key
from shared_lib.config import create_sample_env_file, ConfigurationError


def generate_keys():
    """Generate the token encryption key."""
    print("Generating encryption key...")

    encryption_key = generate_encryption_key()

    print(f"Encryption Key: {encryption_key}")
    print("\nAdd this to your .env file:")
    print(f"SECURITY__ENCRYPTION_KEY={encryption_key}")


def create_env_file():
    """Create sample .env file."""
    env_path = project_root / ".env"

    if env_path.exists():
        response = input(f"{env_path} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("Skipping .env file creation.")
            return

    create_sample_env_file(str(env_path))
    print(f"Created {env_path}")
    print("Please edit the .env file with your actual configuration values.")


def validate_config():
    """Validate current configuration."""
    try:
        from shared_lib.config import load_config
        config = load_config()
        print("✓ Configuration is valid")
        print(f"  Database: {config.database.host}:{config.database.port}/{config.database.database}")
        print(f"  Redis: {config.redis.host}:{config.redis.port}/{config.redis.db}")
        print(f"  Sync interval: {config.scheduler.sync_interval_hours}h")
        print(f"  Email delivery: {'enabled' if config.email.enabled else 'disabled'}")

    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}")
        return False

    return True


def main():
    """Main setup function."""
    parser = argparse.ArgumentParser(description="Setup the Copyright Claim Monitor")
    parser.add_argument("--keys", action="store_true", help="Generate encryption key")
    parser.add_argument("--env", action="store_true", help="Create .env file")
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--all", action="store_true", help="Run all setup steps")

    args = parser.parse_args()

    if args.all or not any([args.keys, args.env, args.validate]):
        print("Setting up the Copyright Claim Monitor...")
        create_env_file()
        generate_keys()
        print("\nSetup complete! Next steps:")
        print("1. Edit .env file with your configuration")
        print("2. Run 'python scripts/setup.py --validate' to check configuration")
        print("3. Start the worker with 'python -m server.run_monitor_worker'")
    else:
        if args.env:
            create_env_file()
        if args.keys:
            generate_keys()
        if args.validate:
            if not validate_config():
                sys.exit(1)


if __name__ == "__main__":
    main()
