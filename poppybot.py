import asyncio
from datetime import timedelta
from typing import Optional, Set

import aiohttp
import discord
from discord import app_commands

from links import (DEFAULT_ALLOWLIST, TTLCache, extract_domain, extract_urls, filter_allowlisted,
                   load_json_list, normalize_url)
from logs import log_error, log_info, log_warning, setup_logging
from scan_cache import ScanCache, ScanCacheError
from settings import ConfigError, get_api_key, load_config
from shortener import ShortenedUrlStore, ShortenerError, short_code, shorten_url
from urlscan import UrlscanClient
from verdicts import Verdict
from virus_scanner import VirusScanner
from virustotal import VirusTotalClient

try:
    config = load_config()
except ConfigError as e:
    print(e)
    raise SystemExit(1)

DISCORD_TOKEN = config["bot"]["discord_token"]
PRESENCE_TEXT = config["bot"]["presence"]
DEBUG_MODE = bool(config["bot"]["debug_mode"])
SCAN_WORKERS = max(1, int(config["bot"]["scan_workers"]))
CHECK_COOLDOWN = int(config["bot"]["check_cooldown_seconds"])

URLSCAN_API_KEY = get_api_key(config, "urlscan", "URLSCAN_API_KEY")
VIRUSTOTAL_API_KEY = get_api_key(config, "virustotal", "VIRUSTOTAL_KEY")

CACHE_PATH = config["cache"]["path"]
CACHE_MAX_AGE = timedelta(hours=config["cache"]["max_age_hours"])
SHORTENER_HISTORY_PATH = config["shortener"]["history_path"]
ALLOWLIST_PATH = config["structure"]["allowlist_path"]

setup_logging(config["structure"]["logging_dir"], config["structure"]["max_log_lines"], DEBUG_MODE)

if not URLSCAN_API_KEY:
    log_warning("No urlscan.io API key configured, every scan will go straight to VirusTotal.")
if not VIRUSTOTAL_API_KEY:
    log_warning("No VirusTotal API key configured, inconclusive urlscan.io results will stay unknown.")

ALLOWLIST = load_json_list(ALLOWLIST_PATH, default=DEFAULT_ALLOWLIST)

VERDICT_REACTIONS = {
    Verdict.SAFE: "✅",
    Verdict.MALICIOUS: "⚠️",
}

VERDICT_COLORS = {
    Verdict.SAFE: discord.Color.green(),
    Verdict.MALICIOUS: discord.Color.red(),
    Verdict.UNKNOWN: discord.Color.orange(),
    Verdict.ERROR: discord.Color.dark_grey(),
}

#queue so on_message never waits on a scan
scan_queue: "asyncio.Queue[tuple[discord.Message, str]]" = asyncio.Queue()
processed_message_urls = TTLCache(max_entries=5000)
check_cooldowns = TTLCache(max_entries=1000)
shortened_urls = ShortenedUrlStore(SHORTENER_HISTORY_PATH)


class PoppyClient(discord.Client):
    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self.tree = app_commands.CommandTree(self)
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.scanner: Optional[VirusScanner] = None
        self.workers: list[asyncio.Task] = []
        self.background_tasks: Set[asyncio.Task] = set()

    async def setup_hook(self):
        self.http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        self.scanner = VirusScanner(
            cache=ScanCache(CACHE_PATH),
            primary=UrlscanClient(
                self.http_session,
                URLSCAN_API_KEY,
                visibility=config["urlscan"]["visibility"],
                poll_interval=config["urlscan"]["poll_interval_seconds"],
                max_polls=config["urlscan"]["max_polls"],
            ),
            fallback=VirusTotalClient(
                self.http_session,
                VIRUSTOTAL_API_KEY,
                poll_interval=config["virustotal"]["poll_interval_seconds"],
                max_polls=config["virustotal"]["max_polls"],
            ),
            max_age=CACHE_MAX_AGE,
        )
        for worker_id in range(SCAN_WORKERS):
            self.workers.append(asyncio.create_task(scan_worker(worker_id)))
        await self.tree.sync()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def close(self):
        pending = [*self.workers, *self.background_tasks]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if self.http_session:
            await self.http_session.close()
        await super().close()


client = PoppyClient()


async def react_to_verdict(message: discord.Message, url: str, verdict: Verdict):
    #unknown and error get no reaction: not a warning, not an all-clear
    reaction = VERDICT_REACTIONS.get(verdict)
    if reaction is None:
        log_info(f"No reaction for {url}: verdict is {verdict.value}.")
        return

    try:
        await message.add_reaction(reaction)
        if verdict is Verdict.MALICIOUS:
            log_warning(f"[MALICIOUS] {url} from {message.author} ({message.author.id}) in #{message.channel}")
            embed = discord.Embed(
                title="Careful with that link!",
                description=f"`{url}` was flagged as **malicious**. Please don't open it.",
                color=discord.Color.red()
            )
            await message.reply(embed=embed, mention_author=False)
        else:
            log_info(f"[CLEAN] {url}")
    except discord.NotFound:
        log_info(f"Message from {message.author} was removed before I could react to {url}.")
    except discord.Forbidden:
        log_warning(f"Missing permissions to react to a message in #{message.channel}.")


async def scan_worker(worker_id: int):
    while True:
        message, url = await scan_queue.get()
        try:
            verdict = await client.scanner.check_url_malware(url)
            await react_to_verdict(message, url, verdict)
        except Exception as e:
            log_error(f"[Scan Worker {worker_id} Error] Failed to process {url}: {e!r}")
        finally:
            scan_queue.task_done()


async def queue_scan(message: discord.Message, url: str):
    #dedupe same (message, url) pair, edits re-send the whole content
    processed_key = f"{message.id}:{url}"
    if processed_key in processed_message_urls:
        return
    processed_message_urls.add(processed_key, ttl_seconds=600)

    await scan_queue.put((message, url))
    log_info(f"Queued for scanning: {url} from {message.author} ({message.author.id}) in #{message.channel}")


async def queue_message_urls(message: discord.Message, urls: Set[str]):
    to_scan = filter_allowlisted(urls, ALLOWLIST)
    skipped = len(urls) - len(to_scan)
    if skipped:
        log_info(f"Skipping {skipped} allowlisted link(s) from {message.author} ({message.author.id}).")
    for url in to_scan:
        await queue_scan(message, url)


#----------------------- bot stuff -----------------------
@client.event
async def on_ready():
    await client.change_presence(activity=discord.CustomActivity(name=PRESENCE_TEXT))
    print(f"Logged in as {client.user}")
    log_info(f"Bot started with {SCAN_WORKERS} scan workers.")


@client.tree.command(name="check_link", description="Scan a link with urlscan.io and VirusTotal")
@app_commands.describe(url="The full URL to scan (including http/https)")
async def check_link(interaction: discord.Interaction, url: str):
    cooldown_key = (interaction.user.id, interaction.channel_id)
    if cooldown_key in check_cooldowns:
        await interaction.response.send_message(
            f"Slow down! You can check another link in {check_cooldowns.remaining(cooldown_key):.0f}s.",
            ephemeral=True
        )
        return

    norm_url = normalize_url(url)
    if not norm_url.startswith(("http://", "https://")):
        await interaction.response.send_message("That doesn't look like a link. Make sure it starts with `http://` or `https://`.", ephemeral=True)
        return

    if extract_domain(norm_url) in ALLOWLIST:
        await interaction.response.send_message(f"`{norm_url}` is on the allowlist. It will not be scanned.", ephemeral=True)
        return

    check_cooldowns.add(cooldown_key, ttl_seconds=CHECK_COOLDOWN)
    await interaction.response.defer(thinking=True)
    client.spawn(finish_manual_check(interaction, norm_url))


async def finish_manual_check(interaction: discord.Interaction, url: str):
    verdict = await client.scanner.check_url_malware(url)

    source = None
    last_scanned = None
    try:
        record = await client.scanner.cache.get(url)
    except ScanCacheError as e:
        log_error(f"[Manual Check Error] Could not read cached record for {url}: {e}")
        record = None
    if record is not None:
        source = (record.raw_response or {}).get("final_verdict_source")
        last_scanned = record.last_scanned_at

    embed = discord.Embed(
        title="Link scan",
        description=f"`{url}`\nVerdict: **{verdict.value.capitalize()}**",
        color=VERDICT_COLORS[verdict]
    )
    if source:
        embed.add_field(name="Source", value=source, inline=True)
    if last_scanned:
        embed.add_field(name="Last scanned", value=discord.utils.format_dt(last_scanned, "R"), inline=True)
    embed.set_footer(text=f"Scanned via /check_link by {interaction.user}", icon_url=interaction.user.display_avatar.url)

    try:
        await interaction.edit_original_response(embed=embed)
    except discord.HTTPException as e:
        log_error(f"[Manual Check Error] Failed to deliver result for {url}: {e}")


@client.tree.command(name="shorten", description="Shorten a long URL")
@app_commands.describe(url="The URL to shorten (including http/https)")
async def shorten_command(interaction: discord.Interaction, url: str):
    if not url.startswith(("http://", "https://")):
        await interaction.response.send_message("Hmm, that doesn't look like a valid URL. Make sure it starts with `http://` or `https://`.", ephemeral=True)
        return

    await interaction.response.defer()
    try:
        short_url = await shorten_url(client.http_session, url)
    except ShortenerError as e:
        if "invalid" in e.message.lower() or "not valid" in e.message.lower():
            await interaction.followup.send("It seems the URL you provided is invalid or unreachable. Please double-check it!")
        else:
            await interaction.followup.send(f"Sorry, I couldn't shorten that URL. The service said: \"{e.message}\"")
        return

    try:
        shortened_urls.save(interaction.user.id, url, short_code(short_url), short_url)
    except (OSError, ValueError) as e:
        log_error(f"Failed to save shortened URL for {interaction.user.id}: {e}")
        await interaction.followup.send("I shortened your URL, but had a hiccup saving it to your history. It should still work!")

    embed = discord.Embed(
        title="Short URL Ready!",
        description=f"Your shortened URL is: **{short_url}**",
        color=discord.Color.blurple()
    )
    embed.add_field(name="Original URL", value=f"`{url}`", inline=False)
    embed.set_footer(text="Use /myurls to see your history.")
    embed.timestamp = discord.utils.utcnow()
    await interaction.followup.send(embed=embed)


@client.tree.command(name="myurls", description="Show the URLs you've shortened")
async def myurls_command(interaction: discord.Interaction):
    try:
        entries = shortened_urls.list_for_user(interaction.user.id)
    except (OSError, ValueError) as e:
        log_error(f"Error fetching shortened URLs for {interaction.user.id}: {e}")
        await interaction.response.send_message("Oops! I had trouble fetching your URL history. Please try again later.", ephemeral=True)
        return

    if not entries:
        await interaction.response.send_message("You haven't shortened any URLs with me yet! Use `/shorten` to start.", ephemeral=True)
        return

    lines = [
        f"**Short:** [{e['short_url']}]({e['short_url']})\n**Original:** `{e['original_url']}`\n*Created: {e['created_at'][:10]}*"
        for e in entries
    ]
    description = "\n\n".join(lines)
    #embed description limit is 4096
    if len(description) > 4000:
        description = "\n\n".join(lines[:5]) + "\n\n*Showing the 5 most recent URLs. You have more!*"

    embed = discord.Embed(
        title=f"Your Shortened URLs, {interaction.user.display_name}",
        description=description,
        color=discord.Color.blurple()
    )
    embed.timestamp = discord.utils.utcnow()
    await interaction.response.send_message(embed=embed)


@client.tree.command(name="ping", description="Show bot latency and response time")
async def ping_command(interaction: discord.Interaction):
    heartbeat = round(client.latency * 1000)

    await interaction.response.defer()
    before = discord.utils.utcnow()

    await interaction.followup.send("Measuring...")  #throwaway message

    after = discord.utils.utcnow()
    roundtrip = round((after - before).total_seconds() * 1000)

    embed = discord.Embed(
        title="Pong :3",
        color=discord.Color.teal()
    )
    embed.add_field(name="Heartbeat Latency", value=f"{heartbeat}ms", inline=True)
    embed.add_field(name="Roundtrip Latency", value=f"{roundtrip}ms", inline=True)

    await interaction.edit_original_response(content=None, embed=embed)

#----------------------- message handling -----------------------

@client.event
async def on_message(message: discord.Message):
    if message.author == client.user or message.author.bot:
        return

    urls = extract_urls(message.content)
    if urls:
        await queue_message_urls(message, urls)


@client.event
async def on_message_edit(before: discord.Message, after: discord.Message):
    if after.author == client.user or after.author.bot:
        return

    new_urls = extract_urls(after.content) - extract_urls(before.content)
    if new_urls:
        await queue_message_urls(after, new_urls)


def main():
    client.run(DISCORD_TOKEN)


if __name__ == "__main__":
    main()
