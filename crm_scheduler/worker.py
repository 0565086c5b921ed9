#!/usr/bin/env python3
"""
Standalone dispatcher process.

Runs the scheduling dispatcher loop outside Celery; any number of these may run
against the same database.
"""
import logging
import signal
import sys
import threading

from dotenv import load_dotenv

# Load environment variables before the settings module is imported
load_dotenv()

from crm_scheduler.core.config import settings
from crm_scheduler.reminders.dispatcher import build_dispatcher
from crm_scheduler.utils.timezone import now_local

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the dispatcher process"""
    logger.info("🚀 Starting scheduling dispatcher")
    logger.info(f"📅 Started at: {now_local()} (UTC offset {settings.CIVIL_UTC_OFFSET_MINUTES} min)")

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"🛑 Received signal {signum}, stopping after the current tick")
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    dispatcher = build_dispatcher()
    try:
        dispatcher.run_forever(stop_event)
    except Exception as e:
        logger.error(f"❌ Dispatcher process error: {e}")
        sys.exit(1)
    finally:
        dispatcher.close()
        logger.info("👋 Dispatcher process terminated")


if __name__ == "__main__":
    main()
