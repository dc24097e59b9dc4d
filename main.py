"""
Medication Reminder — Entry Point.

Single entry point: `python main.py` starts the Telegram bot. Logging is
configured by the bot's own `main()`, shared with the console script.
"""

from medreminder.bot.telegram_bot import main

if __name__ == "__main__":
    main()
