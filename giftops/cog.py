import asyncio

from discord.ext import commands, tasks

from .config import GIFT_CODE_API_CONFIG
from .database import GiftDatabase
from .gift_captchasolver import get_captcha_solver
from .gift_operationsapi import GiftCodeAPI
from .logsetup import get_gift_ops_logger, get_giftlog_logger
from .queue_manager import QueueManager
from .redeem_executor import SYSTEM_MANUAL_ADD, RedeemExecutor, clean_gift_code
from .redemption import RedemptionEngine
from .wos_api import WosApiClient


class GiftOperations(commands.Cog):
    def __init__(self, bot, db=None, api_client=None, solver=None, feed_session=None):
        self.bot = bot

        self.logger = get_gift_ops_logger()
        self.giftlog = get_giftlog_logger()
        self.logger.info("GiftOperations Cog initializing...")

        if db is not None:
            self.db = db
        elif hasattr(bot, 'conn'):
            self.db = GiftDatabase(conn=bot.conn)
        else:
            self.db = GiftDatabase()

        self.solver = solver or get_captcha_solver()
        self.queue = QueueManager(self.db.processes)
        self.engine = RedemptionEngine(api_client or WosApiClient(), self.solver, self.db)
        self.executor = RedeemExecutor(self.db, self.queue, self.engine, self.solver, progress_sink=self.log_progress)
        self.api = GiftCodeAPI(self.db, self.executor, session=feed_session)

    async def cog_load(self):
        recovered = await self.queue.recover_processes()
        if recovered:
            self.logger.info(f"GiftOps: Resuming {len(recovered)} process(es) after restart")
        self.api_sync_loop.start()

    async def cog_unload(self):
        self.api_sync_loop.cancel()
        await self.queue.shutdown()
        self.solver.unload()
        self.logger.info("GiftOperations Cog unloaded")

    def log_progress(self, process_id, stats, state, message):
        self.logger.info(
            f"GiftOps: Process {process_id} [{state}] {stats['processed']}/{stats['total']} "
            f"({stats['percent']}%) success={stats['success']} already={stats['alreadyRedeemed']} "
            f"restricted={stats['restricted']} failed={stats['failed']} pending={stats['totalPending']}"
            + (f" - {message}" if message else "")
        )

    async def add_gift_code(self, giftcode, added_by=SYSTEM_MANUAL_ADD):
        """Validate, store and auto-redeem a manually entered code, then share it with the feed."""
        result = await self.executor.add_gift_code(giftcode, added_by)
        if result.get("success"):
            code = self.db.codes.get_gift_code(clean_gift_code(giftcode))
            if code and await self.api.add_giftcode(code["gift_code"], code["date"]):
                self.db.codes.update_api_pushed(code["gift_code"], True)
        return result

    async def redeem_for_alliance(self, giftcode, alliance_id, admin_id):
        alliance = self.db.alliances.get_alliance(alliance_id)
        if alliance is None:
            return {"success": False, "message": f"Alliance {alliance_id} not found"}
        result = await self.executor.create_auto_redeem_process(giftcode, alliance, admin_id)
        if result is None:
            return {"success": False, "message": 'No eligible players to redeem for'}
        return result

    @tasks.loop(seconds=GIFT_CODE_API_CONFIG["MIN_CHECK_INTERVAL"])
    async def api_sync_loop(self):
        delay = await self.api.run_cycle()
        self.logger.info(f"GiftOps: Next gift code API sync in {delay:.0f}s")
        self.api_sync_loop.change_interval(seconds=delay)

    @api_sync_loop.before_loop
    async def before_api_sync_loop(self):
        self.logger.info("GiftOps: Waiting for bot to be ready before starting api_sync_loop...")
        await self.bot.wait_until_ready()
        await asyncio.sleep(GIFT_CODE_API_CONFIG["INITIAL_DELAY"])
        self.logger.info("GiftOps: Bot is ready, api_sync_loop will start.")


async def setup(bot):
    await bot.add_cog(GiftOperations(bot))
