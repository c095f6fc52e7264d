"""
Pytest configuration shared by every test module.
Settings are read once at import time, so the environment is set before anything imports the app.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["APP_URL"] = "http://shop.test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_EMAIL"] = "admin@shop.test"
os.environ["ENFORCE_AMOUNT_MATCH"] = "True"

os.environ["MPESA_CONSUMER_KEY"] = "test-consumer-key"
os.environ["MPESA_CONSUMER_SECRET"] = "test-consumer-secret"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_CALLBACK_URL"] = "https://shop.test/mpesa/callback"

os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "sk_test_secret"

os.environ["RATE_LIMIT_WINDOW_SECONDS"] = "60"
os.environ["RATE_LIMIT_MPESA_INITIATE"] = "3"
os.environ["RATE_LIMIT_PAYSTACK_INITIATE"] = "5"
os.environ["RATE_LIMIT_MANUAL_SUBMIT"] = "5"
