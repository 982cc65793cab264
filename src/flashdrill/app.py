"""Main application entry point."""
import logging
from typing import Optional
from warnings import filterwarnings

from telegram.warnings import PTBUserWarning

# Suppress the warning about CallbackQueryHandler and per_message
filterwarnings(action="ignore", message=r".*CallbackQueryHandler", category=PTBUserWarning)

from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ConversationHandler,
    MessageHandler,
    filters,
)

from flashdrill.bot import (
    ADDING_SETS,
    MAIN_MENU,
    STUDYING,
    handle_add_sets,
    handle_callback,
    handle_start,
    handle_stats_command,
    handle_sync_command,
)
from flashdrill.config import settings
from flashdrill.models.base import SessionLocal, init_db
from flashdrill.services.study_context import StudyContext, create_remote_store


class FlashDrillApp:
    """Main application class."""

    def __init__(self):
        """Initialize the application."""
        self.application: Optional[Application] = None
        self.study: Optional[StudyContext] = None
        self.running = False
        self.db = None
        self.logger = logging.getLogger(__name__)

    def build_handlers(self) -> ConversationHandler:
        """Conversation handler routing commands and buttons."""
        commands = [
            CommandHandler("start", handle_start),
            CommandHandler("stats", handle_stats_command),
            CommandHandler("sync", handle_sync_command),
        ]
        return ConversationHandler(
            entry_points=commands,
            states={
                MAIN_MENU: [CallbackQueryHandler(handle_callback)],
                STUDYING: [CallbackQueryHandler(handle_callback)],
                ADDING_SETS: [
                    MessageHandler(filters.TEXT & ~filters.COMMAND, handle_add_sets),
                    CallbackQueryHandler(handle_callback),
                ],
            },
            fallbacks=commands,
            per_message=False,
        )

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        if not settings.bot.token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")

        try:
            # Initialize local store
            init_db()
            self.db = SessionLocal()
            self.logger.info("Local store initialized")

            # Load the active account and pull shared data
            self.study = StudyContext(self.db, create_remote_store())
            if not await self.study.start():
                self.logger.warning("Initial sync failed, continuing with cached data")

            # Create application
            self.application = Application.builder().token(settings.bot.token).build()
            self.application.bot_data["study"] = self.study
            self.application.add_handler(self.build_handlers())
            self.logger.info("Handlers added")

            # Start application
            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling()
            self.logger.info("Application started")

            self.running = True

        except Exception as e:
            self.logger.error(f"Failed to start application: {e}")
            self.application = None
            await self._close_study()
            raise

    async def _close_study(self) -> None:
        if self.study:
            await self.study.close()
            self.study = None
            self.logger.info("Study services closed")

        if self.db:
            self.db.close()
            self.db = None
            self.logger.info("Local store session closed")

    async def stop(self) -> None:
        """Stop the application."""
        if not self.running:
            return

        try:
            if self.application:
                await self.application.updater.stop()
                await self.application.stop()
                await self.application.shutdown()
                self.application = None
                self.logger.info("Application stopped")

            await self._close_study()

        finally:
            self.running = False
