"""
CLI commands for FireStocks.
"""

import argparse
import json
import uuid
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from firestocks.config import load_config_or_default
from firestocks.database.connection import Database
from firestocks.database.repository import (
    UserRepository,
    FollowRepository,
    PredictionRepository,
    TelegramBotRepository,
    WhatsAppRepository,
)
from firestocks.database.models import Prediction, TelegramBot, User, WhatsAppTemplate
from firestocks.main import FireStocksApp


def add_user(
    db: Database,
    username: Optional[str] = None,
    email: Optional[str] = None,
    whatsapp: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    user = User(
        id=uuid.uuid4().hex,
        username=username,
        email=email,
        whatsapp_number=whatsapp,
        whatsapp_notifications_enabled=bool(whatsapp),
    )
    return repo.create(user)


def add_post(
    db: Database,
    user_id: str,
    symbol: str,
    initial_price: float,
    target_price: float,
    stop_loss_price: float,
    exchange: Optional[str] = None,
    company_name: str = "",
) -> Prediction:
    """Add a prediction for a user."""
    repo = PredictionRepository(db)
    prediction = Prediction(
        user_id=user_id,
        symbol=symbol.upper(),
        exchange=exchange,
        company_name=company_name,
        initial_price=initial_price,
        target_price=target_price,
        stop_loss_price=stop_loss_price,
    )
    return repo.create(prediction)


def export_history(app: FireStocksApp, user_id: str, path: Optional[str] = None) -> str:
    """Write a user's run history to a JSON file. Returns the file name."""
    path = path or app.history.export_filename()
    with open(path, "w", encoding="utf-8") as f:
        f.write(app.history.export_json(user_id))
    return path


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="FireStocks CLI")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--db", help="Database path (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--username", help="Username")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--whatsapp", help="WhatsApp number")

    user_subparsers.add_parser("list", help="List users")

    follow_parser = user_subparsers.add_parser("follow", help="Follow another user")
    follow_parser.add_argument("--user", required=True, help="Follower ID")
    follow_parser.add_argument("--author", required=True, help="Author ID")

    # Post commands
    post_parser = subparsers.add_parser("post", help="Prediction management")
    post_subparsers = post_parser.add_subparsers(dest="action")

    add_post_parser = post_subparsers.add_parser("add", help="Add prediction")
    add_post_parser.add_argument("--user", required=True, help="User ID")
    add_post_parser.add_argument("--symbol", required=True, help="Ticker symbol")
    add_post_parser.add_argument("--exchange", help="Exchange suffix (e.g. SR)")
    add_post_parser.add_argument("--company", default="", help="Company name")
    add_post_parser.add_argument("--initial", type=float, required=True, help="Initial price")
    add_post_parser.add_argument("--target", type=float, required=True, help="Target price")
    add_post_parser.add_argument("--stop-loss", type=float, required=True, help="Stop loss")

    list_post_parser = post_subparsers.add_parser("list", help="List predictions")
    list_post_parser.add_argument("--user", required=True, help="User ID")

    # Bot commands
    bot_parser = subparsers.add_parser("bot", help="Telegram bot management")
    bot_subparsers = bot_parser.add_subparsers(dest="action")

    add_bot_parser = bot_subparsers.add_parser("add", help="Register a bot")
    add_bot_parser.add_argument("--user", required=True, help="Owner user ID")
    add_bot_parser.add_argument("--token", required=True, help="Bot token")
    add_bot_parser.add_argument("--name", required=True, help="Bot name")

    # Template commands
    template_parser = subparsers.add_parser("template", help="WhatsApp templates")
    template_subparsers = template_parser.add_subparsers(dest="action")

    add_template_parser = template_subparsers.add_parser("add", help="Add template")
    add_template_parser.add_argument("--name", required=True, help="Template name")
    add_template_parser.add_argument("--type", default="new_post", help="Template type")
    add_template_parser.add_argument("--lang", default="ar", help="Language code")
    add_template_parser.add_argument("--body", required=True, help="Body with {{placeholders}}")

    # Check commands
    check_parser = subparsers.add_parser("check", help="Run price checks")
    check_parser.add_argument("--user", help="Only this user")

    # History commands
    history_parser = subparsers.add_parser("history", help="Run history")
    history_subparsers = history_parser.add_subparsers(dest="action")

    export_parser = history_subparsers.add_parser("export", help="Export to JSON")
    export_parser.add_argument("--user", required=True, help="User ID")
    export_parser.add_argument("--output", help="Output file")

    stats_parser = history_subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument("--user", required=True, help="User ID")

    args = parser.parse_args()

    config = load_config_or_default(args.config)

    # Initialize database
    db = Database(args.db or config.database.path)
    db.initialize()

    # Handle commands
    if args.command == "user":
        if args.action == "add":
            user = add_user(db, username=args.username, email=args.email, whatsapp=args.whatsapp)
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            repo = UserRepository(db)
            for user in repo.list_all():
                print(f"ID: {user.id}, Name: {user.display_name}, Email: {user.email}")
        elif args.action == "follow":
            FollowRepository(db).add(args.user, args.author)
            print(f"{args.user} now follows {args.author}")

    elif args.command == "post":
        if args.action == "add":
            prediction = add_post(
                db,
                user_id=args.user,
                symbol=args.symbol,
                initial_price=args.initial,
                target_price=args.target,
                stop_loss_price=args.stop_loss,
                exchange=args.exchange,
                company_name=args.company,
            )
            print(f"Created post with ID: {prediction.id}")
        elif args.action == "list":
            repo = PredictionRepository(db)
            for p in repo.list_by_user(args.user):
                state = "closed" if p.closed else "open"
                print(f"{p.id}: {p.quote_symbol} {p.current_price} -> {p.target_price} ({state})")

    elif args.command == "bot":
        if args.action == "add":
            bot = TelegramBotRepository(db).create(
                TelegramBot(user_id=args.user, bot_token=args.token, bot_name=args.name)
            )
            print(f"Registered bot with ID: {bot.id}")

    elif args.command == "template":
        if args.action == "add":
            template = WhatsAppRepository(db).create_template(
                WhatsAppTemplate(
                    template_name=args.name,
                    template_type=args.type,
                    language_code=args.lang,
                    body_template=args.body,
                )
            )
            print(f"Created template with ID: {template.id}")

    elif args.command == "check":
        app = FireStocksApp(db=db, config=config)
        if args.user:
            run = app.run_price_check(args.user)
            print(json.dumps(run.to_response(), indent=2))
        else:
            for run in app.run_check():
                print(f"{run.user_id}: {run.message}")

    elif args.command == "history":
        app = FireStocksApp(db=db, config=config)
        if args.action == "export":
            path = export_history(app, args.user, args.output)
            print(f"Exported history to {path}")
        elif args.action == "stats":
            print(json.dumps(app.history.statistics(args.user), indent=2))

    db.close()


if __name__ == "__main__":
    main()
