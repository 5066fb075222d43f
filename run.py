"""Local development entry point.

Usage:
    python run.py

Reads .env first so DATABASE_URL, DIGISTORE24_API_KEY, DISCORD_WEBHOOK_URL
and friends are visible to the config classes.

Point the platform's IPN / webhook URL at http://<host>:5001/webhook
(a tunnel such as ngrok works for local testing).
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from app import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
