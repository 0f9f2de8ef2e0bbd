#!/usr/bin/env python
"""
Helper script to create the .env file read by storefront/settings.py.
Run this script and follow the prompts.
"""

from pathlib import Path
from django.core.management.utils import get_random_secret_key


def create_env_file():
    env_path = Path('.env')

    if env_path.exists():
        response = input('.env file already exists. Overwrite? (y/n): ')
        if response.lower() != 'y':
            print('Cancelled.')
            return

    print('\n=== Storefront - Environment Setup ===\n')
    print('You need to get your Stripe test keys from: https://dashboard.stripe.com/test/apikeys')
    print('Make sure you are in TEST MODE (toggle in top right of Stripe dashboard)\n')

    secret_key = get_random_secret_key()
    otp_secret = get_random_secret_key()
    print(f'Generated Django SECRET_KEY: {secret_key[:20]}...')
    print(f'Generated OTP_SECRET: {otp_secret[:20]}...\n')

    print('Enter your Stripe keys:')
    stripe_publishable = input('Stripe Publishable Key (pk_test_...): ').strip()
    stripe_secret = input('Stripe Secret Key (sk_test_...): ').strip()
    webhook_secret = input('Stripe Webhook Signing Secret (whsec_..., Enter to skip): ').strip()

    if not stripe_publishable.startswith('pk_test_'):
        print('WARNING: Publishable key should start with pk_test_')
    if not stripe_secret.startswith('sk_test_'):
        print('WARNING: Secret key should start with sk_test_')
    if not webhook_secret:
        print('WARNING: webhook signatures will not be verified until STRIPE_WEBHOOK_SECRET is set')

    print('\nStore settings (press Enter for defaults):')
    currency = input('Currency [inr]: ').strip().lower() or 'inr'
    return_window = input('Return window in days [30]: ').strip() or '30'

    print('\nDatabase settings (leave the name empty to use SQLite):')
    db_name = input('Database name []: ').strip()
    db_lines = '# DB_NAME is unset, so SQLite is used\n'
    if db_name:
        db_user = input('Database user [postgres]: ').strip() or 'postgres'
        db_password = input('Database password: ').strip()
        db_host = input('Database host [localhost]: ').strip() or 'localhost'
        db_port = input('Database port [5432]: ').strip() or '5432'
        db_lines = (
            f'DB_NAME={db_name}\n'
            f'DB_USER={db_user}\n'
            f'DB_PASSWORD={db_password}\n'
            f'DB_HOST={db_host}\n'
            f'DB_PORT={db_port}\n'
        )

    env_content = f"""# Django Settings
SECRET_KEY={secret_key}
DEBUG=True
LOG_LEVEL=INFO

# Database Settings
{db_lines}
# Stripe Settings (Test Mode)
# Get these from: https://dashboard.stripe.com/test/apikeys
STRIPE_PUBLISHABLE_KEY={stripe_publishable}
STRIPE_SECRET_KEY={stripe_secret}
STRIPE_WEBHOOK_SECRET={webhook_secret}
STORE_CURRENCY={currency}

# Returns and one-time passwords
RETURN_WINDOW_DAYS={return_window}
OTP_SECRET={otp_secret}
OTP_EXPIRY_MINUTES=5
OTP_MAX_ATTEMPTS=5
"""

    with open('.env', 'w') as f:
        f.write(env_content)

    print('\n.env file created successfully!')
    print('\nNext steps:')
    print('1. Run: python manage.py migrate')
    print('2. Run: python manage.py seed_products')
    print('3. Run: python manage.py runserver')
    print('4. Point a Stripe webhook at: http://127.0.0.1:8000/webhooks/stripe/')
    print('5. Schedule: python manage.py reconcile_payments')


if __name__ == '__main__':
    try:
        create_env_file()
    except KeyboardInterrupt:
        print('\n\nCancelled.')
    except Exception as e:
        print(f'\nError: {e}')
