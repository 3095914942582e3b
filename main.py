"""
EduBot — Entry Point.

Single entry point: `python main.py` starts the Telegram bot.
"""

from edubot.bot.telegram_bot import main

if __name__ == "__main__":
    main()
