"""
Usage (local):
  export BOT_TOKEN="..."
  export COBALT_API_URL="https://cobalt.example.org"
  python bot.py
"""

import asyncio
import dataclasses
import logging
import os
import re
import secrets
import tempfile
import time
import traceback
from pathlib import Path

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from cobalt import (
    CobaltApiError,
    CobaltClient,
    MediaTooLargeError,
    UploadError,
    ZiplineUploader,
    describe_api_error,
    download_media,
    filename_from_url,
    filename_is_photo,
)
from picker_grid import (
    GridBuildError,
    GridConfig,
    PickerItem,
    PickerSelectionError,
    build_picker_preview,
    select_choice,
)

# -------------------------
# Configuration
# -------------------------
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
COBALT_API_URL = os.getenv("COBALT_API_URL", "https://cobalt.finnley.dev").strip()
COBALT_API_KEY = os.getenv("COBALT_API_KEY", "").strip()
ZIP_INSTANCE = os.getenv("ZIP_INSTANCE", "").strip()
ZIP_TOKEN = os.getenv("ZIP_TOKEN", "").strip()
ZIP_FOLDER = os.getenv("ZIP_FOLDER", "").strip()
MAX_CONCURRENT_DOWNLOADS = int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "1"))
MAX_BOT_FILE_BYTES = int(os.getenv("MAX_BOT_FILE_BYTES", str(50 * 1024 * 1024)))
DOWNLOADS_DIR = Path(os.getenv("DOWNLOADS_DIR", "downloads"))
THUMBNAIL_FETCH_TIMEOUT_SECONDS = float(os.getenv("THUMBNAIL_FETCH_TIMEOUT_SECONDS", "10"))
MAX_CONCURRENT_THUMBNAIL_FETCHES = int(os.getenv("MAX_CONCURRENT_THUMBNAIL_FETCHES", "6"))
PICKER_TTL_SECONDS = int(os.getenv("PICKER_TTL_SECONDS", "600"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))

# -------------------------
# Logging
# -------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cobalt-bot")
logging.getLogger("telegram").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# -------------------------
# Messages
# -------------------------
START_TEXT = (
    "<b>Welcome to Cobalt Fox!</b>\n"
    "Cobalt Fox allows you to download videos from YouTube, Facebook, Instagram, Twitter, "
    "and many more platforms. Just send me a link to the video you want to download "
    "and I will take care of the rest.\n\n"
    "If you want to know more, type /help."
)
HELP_TEXT = (
    "Just send me a link of the medium you want to download and I will take care of the rest.\n\n"
    "If the link holds several media, I will send a numbered preview and you pick one.\n\n"
    "<b>Example:</b>\n<code>https://www.youtube.com/watch?v=dQw4w9WgXcQ</code>"
)
SUPPORTED_SERVICES = (
    "Bilibili", "Bluesky", "Dailymotion", "Instagram", "Facebook", "Loom", "Ok.ru", "Pinterest",
    "Reddit", "Rutube", "Snapchat", "Soundcloud", "Streamable", "Tiktok", "Tumblr", "Twitch clips",
    "Twitter/x", "Vimeo", "Vine", "vk videos &amp; clips", "Youtube",
)
SUPPORTED_TEXT = (
    "Here is a list of supported services:\n\n"
    + "\n".join(f"- {service}" for service in SUPPORTED_SERVICES)
    + "\n\nNote: You can't download videos from Soundcloud."
)
CREDITS_TEXT = (
    "<b>Developed by @finnleyfox</b>\n\n"
    "Cobalt Fox is powered by Cobalt. Cobalt is a free and open source project that allows you "
    'to download videos from various platforms. You can find the source code on '
    '<a href="https://github.com/imputnet/cobalt">GitHub</a>.'
)
TOO_LARGE_TEXT = "The file exceeds 50mb and is too large to send due to Telegrams API restrictions. I'm sorry."
GENERIC_ERROR_TEXT = "There was an error while processing the link. Please try again later."

# -------------------------
# URL Detection
# -------------------------
URL_REGEX = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)


def extract_links(text: str) -> list[str]:
    raw_links = URL_REGEX.findall(text or "")
    return [link.rstrip(".,;:!?)]}>") for link in raw_links]


def first_link(text: str) -> str | None:
    first_token = (text or "").strip().split(" ")[0]
    if not first_token.lower().startswith(("http://", "https://")):
        return None
    links = extract_links(first_token)
    return links[0] if links else None


# -------------------------
# Bot State
# -------------------------
@dataclasses.dataclass
class PendingPicker:
    source_url: str
    choices: list[PickerItem]
    expires_at: float

    def choose(self, label: int) -> PickerItem:
        return select_choice(self.choices, label)


download_semaphore = asyncio.Semaphore(MAX_CONCURRENT_DOWNLOADS)
pending_pickers: dict[str, PendingPicker] = {}

cobalt_client = CobaltClient(COBALT_API_URL, api_key=COBALT_API_KEY or None)
zipline_uploader = ZiplineUploader(ZIP_INSTANCE, ZIP_TOKEN, folder=ZIP_FOLDER or None) if ZIP_INSTANCE else None
grid_config = GridConfig(
    output_dir=DOWNLOADS_DIR,
    fetch_timeout=THUMBNAIL_FETCH_TIMEOUT_SECONDS,
    max_concurrent_fetches=MAX_CONCURRENT_THUMBNAIL_FETCHES,
)


def _prune_pending_pickers(now: float) -> None:
    expired_tokens = [token for token, picker in pending_pickers.items() if picker.expires_at <= now]
    for token in expired_tokens:
        pending_pickers.pop(token, None)


def remember_picker(source_url: str, choices: list[PickerItem]) -> str:
    now = time.monotonic()
    _prune_pending_pickers(now)
    token = secrets.token_urlsafe(8)
    pending_pickers[token] = PendingPicker(
        source_url=source_url,
        choices=list(choices),
        expires_at=now + PICKER_TTL_SECONDS,
    )
    return token


def lookup_picker(token: str) -> PendingPicker | None:
    _prune_pending_pickers(time.monotonic())
    return pending_pickers.get(token)


def build_picker_keyboard(token: str, count: int, per_row: int = 5) -> InlineKeyboardMarkup:
    buttons = [InlineKeyboardButton(str(label), callback_data=f"pick:{token}:{label}") for label in range(1, count + 1)]
    rows = [buttons[start : start + per_row] for start in range(0, len(buttons), per_row)]
    return InlineKeyboardMarkup(rows)


def parse_pick_callback(data: str) -> tuple[str, int] | None:
    parts = (data or "").split(":")
    if len(parts) != 3 or parts[0] != "pick" or not parts[2].isdigit():
        return None
    return parts[1], int(parts[2])


def is_request_too_large(err: Exception) -> bool:
    return isinstance(err, TelegramError) and "request entity too large" in str(err).lower()


def picker_filename(item: PickerItem, token: str, label: int) -> str:
    extension = "jpg" if item.type == "photo" else "mp4"
    filename = filename_from_url(item.url, f"{token}_{label}")
    if not Path(filename).suffix:
        filename = f"{filename}.{extension}"
    return filename


# -------------------------
# Relay
# -------------------------
async def safe_edit_status(status_msg, text: str) -> None:
    if not status_msg:
        return
    try:
        await status_msg.edit_text(text)
    except Exception as edit_err:
        logger.info("Could not edit status message: %s", edit_err)


async def send_oversize_link(chat, media_url: str, file_path: Path | None) -> None:
    if file_path is not None and zipline_uploader is not None:
        await chat.send_message("The file is larger than 50mb and is being uploaded...")
        try:
            link = await asyncio.to_thread(zipline_uploader.upload, file_path)
        except UploadError as upload_err:
            logger.warning("Oversize upload failed, falling back to direct link: %s", upload_err)
        else:
            await chat.send_message(
                f"Download complete! Here is the download link: {link}\n"
                "Please note that the link will expire within one hour."
            )
            return

    await chat.send_message(
        "The file exceeds 50mb and cannot be sent. A link will be provided instead. "
        "Please note that the link will expire within a few minutes."
    )
    await chat.send_message(f"Resolve complete! Here is the download link: {media_url}")


async def relay_media(chat, media_url: str, filename: str, is_photo: bool) -> None:
    """Download one resolved medium and send it back to ``chat``."""
    with tempfile.TemporaryDirectory(prefix="cobalt-bot-") as temp_dir_name:
        file_path = Path(temp_dir_name) / Path(filename).name
        await chat.send_message("Download in progress...")
        try:
            await asyncio.to_thread(download_media, media_url, file_path, MAX_BOT_FILE_BYTES)
        except MediaTooLargeError as size_err:
            logger.info("Skipping download, announced size too large: %s", size_err)
            await send_oversize_link(chat, media_url, None)
            return

        size_bytes = file_path.stat().st_size
        if size_bytes > MAX_BOT_FILE_BYTES:
            logger.info("Downloaded file too large for Telegram: size_bytes=%s", size_bytes)
            await send_oversize_link(chat, media_url, file_path)
            return

        await chat.send_message("Download complete! Sending...")
        if is_photo:
            with file_path.open("rb") as f:
                await chat.send_photo(photo=f)
        with file_path.open("rb") as f:
            await chat.send_document(document=f, filename=file_path.name)


async def send_picker_preview(chat, source_url: str, items: list[PickerItem]) -> None:
    try:
        preview = await build_picker_preview(items, grid_config)
    except GridBuildError as grid_err:
        logger.warning("Couldn't build picker preview for %s: %s", source_url, grid_err)
        await chat.send_message("I was able to resolve the URL, but couldn't build the preview. Please try again later.")
        return

    try:
        token = remember_picker(source_url, preview.choices)
        with preview.path.open("rb") as f:
            await chat.send_photo(
                photo=f,
                caption="Resolve complete! Please select the medium you want to download.",
                reply_markup=build_picker_keyboard(token, len(preview.choices)),
            )
    finally:
        preview.discard()


async def report_failure(chat, err: Exception) -> None:
    if isinstance(err, CobaltApiError):
        await chat.send_message(describe_api_error(err.code))
    elif is_request_too_large(err):
        await chat.send_message(TOO_LARGE_TEXT)
    else:
        await chat.send_message(GENERIC_ERROR_TEXT)


# -------------------------
# Handlers
# -------------------------
async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text(START_TEXT, parse_mode=ParseMode.HTML)


async def handle_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text(HELP_TEXT, parse_mode=ParseMode.HTML)


async def handle_supported(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text(SUPPORTED_TEXT, parse_mode=ParseMode.HTML)


async def handle_credits(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text(
            CREDITS_TEXT, parse_mode=ParseMode.HTML, disable_web_page_preview=True
        )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    if not message or not message.text or not chat:
        return

    url = first_link(message.text)
    if not url:
        await message.reply_text("Please provide a valid link")
        return

    status_msg = await message.reply_text("Resolving the URL...")
    logger.info("Resolve started: chat_id=%s url=%s", chat.id, url)
    try:
        async with download_semaphore:
            result = await asyncio.to_thread(cobalt_client.resolve, url)

            if result.status in ("tunnel", "redirect") and result.url:
                filename = result.filename or filename_from_url(result.url, f"media_{int(time.time() * 1000)}")
                await relay_media(chat, result.url, filename, result.is_photo)
            elif result.status == "picker" and result.picker:
                await send_picker_preview(chat, url, result.picker)
            else:
                logger.warning("Unhandled cobalt status for %s: %s", url, result.status)
                await chat.send_message(GENERIC_ERROR_TEXT)

        try:
            await status_msg.delete()
        except Exception as delete_err:
            logger.info("Could not delete status message: %s", delete_err)
    except Exception as e:
        logger.error("Error handling URL %s: %s", url, e)
        logger.error(traceback.format_exc())
        await safe_edit_status(status_msg, "Failed.")
        await report_failure(chat, e)


async def handle_pick(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    chat = update.effective_chat
    if not query or not chat:
        return

    parsed = parse_pick_callback(query.data)
    picker = lookup_picker(parsed[0]) if parsed else None
    if not parsed or not picker:
        await query.answer("This selection has expired. Please send the link again.", show_alert=True)
        return

    token, label = parsed
    try:
        item = picker.choose(label)
    except PickerSelectionError:
        await query.answer("Unknown choice.", show_alert=True)
        return

    await query.answer(f"Downloading #{label}...")
    logger.info("Picker choice: chat_id=%s source=%s label=%s type=%s", chat.id, picker.source_url, label, item.type)
    try:
        async with download_semaphore:
            filename = picker_filename(item, token, label)
            await relay_media(chat, item.url, filename, item.type == "photo" or filename_is_photo(filename))
    except Exception as e:
        logger.error("Error handling picker choice %s for %s: %s", label, picker.source_url, e)
        logger.error(traceback.format_exc())
        await report_failure(chat, e)


async def log_heartbeat(_: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info("Bot is listening...")


# -------------------------
# Main
# -------------------------
def main() -> None:
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is required.")

    app = (
        Application.builder()
        .token(BOT_TOKEN)
        .connect_timeout(60)
        .read_timeout(300)
        .write_timeout(300)
        .pool_timeout(60)
        .build()
    )

    app.add_handler(CommandHandler("start", handle_start))
    app.add_handler(CommandHandler("help", handle_help))
    app.add_handler(CommandHandler("supported", handle_supported))
    app.add_handler(CommandHandler("credits", handle_credits))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    app.add_handler(CallbackQueryHandler(handle_pick, pattern=r"^pick:"))

    app.job_queue.run_repeating(log_heartbeat, interval=HEARTBEAT_INTERVAL_SECONDS, first=0)
    logger.info("Bot started. Polling and waiting for updates...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
