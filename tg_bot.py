# tg_bot.py
import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from functools import partial
from typing import List, Optional, Tuple

import structlog
from PIL import UnidentifiedImageError
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup, Update
from telegram.ext import (
    ApplicationBuilder, CallbackQueryHandler, CommandHandler, ContextTypes, ConversationHandler,
    MessageHandler, filters
)

from ai_parser import ExtractionError, analyze_phase1, analyze_phase2, scan_failed_message, upload_image
from config import Settings
from draft import (
    AddGuest, AddItem, RemoveGuest, SelectMode, SetCustomAmount, SetPayer, ToggleAssignment,
    ToggleIncluded, apply_draft, new_draft, reseed_items, set_total, transition
)
from image_prep import normalize_image
from models import Mode, Receipt, SplitDraft
from money import format_cents, parse_to_cents
from payload import build_payload, summary_lines, write_payload_into_url
from reconcile import reconcile_issues, to_receipt
from scan_session import ITEMS_ERROR, ITEMS_LOADING, READY, ScanSession
from split_calc import (
    DEFAULT_TIP_PERCENT, manual_receipt, owed_cents, unallocated_cents, unassigned_cents, with_tip
)
from utils import configure_logging

log = structlog.get_logger()

# --- Conversation States ---
WAIT_RECEIPT, SPLITTING = range(2)

RESTART_LABEL = "🔄 Restart"
WELCOME = ("👋 Welcome to the Receipt Splitter bot!\n"
           "📸 Send a photo of the receipt, or type /amount 42.50 to enter a total by hand.")
HELP = ("/people Alice Bob - who was there (you are always included)\n"
        "/payer Alice - who paid\n"
        "/out Bob - toggle someone in or out of the split\n"
        "/tip 18 - add a tip percent to the subtotal\n"
        "/set Alice 12.50 - custom amount for one person\n"
        "/item Fries 4.50 - add an item\n"
        "/done - finish and share")


# --- Keyboards ---
def main_menu_keyboard():
    return ReplyKeyboardMarkup([[KeyboardButton(RESTART_LABEL)]], resize_keyboard=True)


def mode_keyboard(current: Mode):
    row = [
        InlineKeyboardButton(("• " if m == current else "") + m.display, callback_data=f"mode|{m.value}")
        for m in (Mode.EQUALLY, Mode.BY_ITEMS, Mode.CUSTOM)
    ]
    return InlineKeyboardMarkup([row])


def item_keyboard(draft: SplitDraft, guest_index: int):
    """Guest picker on top, then one toggle button per complete item for the selected guest."""
    guests = [
        InlineKeyboardButton(("• " if i == guest_index else "") + p.display_name(i, draft.my_name),
                             callback_data=f"guest|{i}")
        for i, p in enumerate(draft.participants) if p.is_included
    ]
    rows = [guests[k:k + 3] for k in range(0, len(guests), 3)]
    selected = draft.participants[guest_index].id if 0 <= guest_index < len(draft.participants) else None
    for i, it in enumerate(draft.items):
        if not it.is_complete:
            continue
        mark = "✅ " if selected in it.assigned_ids else ""
        rows.append([InlineKeyboardButton(f"{mark}{it.label} ({format_cents(it.price_cents)})",
                                          callback_data=f"item|{i}")])
    rows.append([InlineKeyboardButton("⬅️ Modes", callback_data="modes")])
    return InlineKeyboardMarkup(rows)


# --- Text helpers ---
def find_guest(draft: SplitDraft, token: str) -> Optional[int]:
    """Roster index from a 1-based number or a display name."""
    token = token.strip()
    if token.isdigit():
        i = int(token) - 1
        return i if 0 <= i < len(draft.participants) else None
    for i, p in enumerate(draft.participants):
        if p.display_name(i, draft.my_name).lower() == token.lower():
            return i
    return None


def roster_from_names(draft: SplitDraft, names: List[str]) -> SplitDraft:
    """Keep "me", replace everyone else with the given names."""
    for p in draft.participants:
        if not p.is_me:
            draft = transition(draft, RemoveGuest(p.id))
    for name in names:
        draft = transition(draft, AddGuest(name))
    return draft


def parse_percent(text: str) -> float:
    try:
        return float(text.strip().rstrip("%"))
    except ValueError:
        return DEFAULT_TIP_PERCENT


def apply_tip_percent(receipt: Receipt, draft: SplitDraft, percent) -> Tuple[Receipt, SplitDraft]:
    """Recompute tip and total from the receipt subtotal."""
    tip, _ = with_tip(receipt.subtotal_cents, percent)
    receipt = replace(receipt, tip_cents=tip)
    receipt = replace(receipt, total_cents=receipt.expected_total)
    draft = replace(draft, tip_cents=tip)
    return receipt, set_total(draft, receipt.total_cents)


def merge_scanned(receipt: Receipt, draft: SplitDraft, scanned: Receipt,
                  tip_percent=None) -> Tuple[Receipt, SplitDraft]:
    """
    Fold late scan details into what the chat already has. The receipt keeps
    its identity and a tip the user picked is re-applied to the scanned
    subtotal; the draft follows the new total.
    """
    receipt = replace(scanned, id=receipt.id, title=receipt.title, created_at=receipt.created_at)
    if tip_percent is not None:
        receipt, draft = apply_tip_percent(receipt, draft, tip_percent)
    if draft.items_seeded:
        # by-items was opened before the items arrived
        return receipt, reseed_items(draft, receipt)
    return receipt, set_total(draft, receipt.total_cents)


def split_text(draft: SplitDraft, receipt: Receipt) -> str:
    owed = owed_cents(draft)
    lines = [f"{receipt.title}: {format_cents(receipt.total_cents)} ({draft.mode.display})"]
    for i, p in enumerate(draft.participants):
        tags = ""
        if p.id == draft.payer_id:
            tags += " 💳"
        if not p.is_included:
            tags += " (out)"
        lines.append(f"{i + 1}. {p.display_name(i, draft.my_name)}{tags}: {format_cents(owed[i])}")

    if draft.mode == Mode.CUSTOM and unallocated_cents(draft) > 0:
        lines.append(f"⚠️ {format_cents(unallocated_cents(draft))} not allocated yet.")
    if draft.mode == Mode.BY_ITEMS and unassigned_cents(draft) > 0:
        lines.append(f"⚠️ {format_cents(unassigned_cents(draft))} of items unassigned, split equally.")
    return "\n".join(lines)


# --- State ---
def _settings(context: ContextTypes.DEFAULT_TYPE) -> Settings:
    return context.bot_data["settings"]


def _session(context: ContextTypes.DEFAULT_TYPE) -> ScanSession:
    session = context.chat_data.get("session")
    if session is None:
        settings = _settings(context)
        session = ScanSession(
            uploader=partial(upload_image, settings=settings),
            phase1=partial(analyze_phase1, settings=settings),
            phase2=partial(analyze_phase2, settings=settings),
            executor=context.bot_data["executor"],
        )
        context.chat_data["session"] = session
    return session


def _start_split(context: ContextTypes.DEFAULT_TYPE, receipt: Receipt) -> SplitDraft:
    draft = new_draft(receipt.total_cents, my_name=_settings(context).my_display_name, receipt=receipt)
    context.chat_data.update(receipt=receipt, draft=draft, guest_index=0, tip_percent=None)
    return draft


async def _show_split(update: Update, context: ContextTypes.DEFAULT_TYPE, extra: str = ""):
    draft, receipt = context.chat_data["draft"], context.chat_data["receipt"]
    await update.effective_message.reply_text(split_text(draft, receipt) + extra,
                                              reply_markup=mode_keyboard(draft.mode))


# --- Handlers ---
async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(WELCOME, reply_markup=main_menu_keyboard())
    return WAIT_RECEIPT


async def handle_restart(update: Update, context: ContextTypes.DEFAULT_TYPE):
    session = context.chat_data.get("session")
    if session is not None:
        session.reset()
    for key in ("receipt", "draft", "guest_index", "tip_percent"):
        context.chat_data.pop(key, None)
    log.info("chat_restarted", chat_id=update.effective_chat.id)
    await update.message.reply_text(WELCOME, reply_markup=main_menu_keyboard())
    return WAIT_RECEIPT


async def handle_receipt(update: Update, context: ContextTypes.DEFAULT_TYPE):
    photo = await update.message.photo[-1].get_file()
    raw = bytes(await photo.download_as_bytearray())
    session = _session(context)
    await update.message.reply_text("🔎 Reading the receipt...")

    try:
        jpeg = await asyncio.to_thread(normalize_image, raw)
        await asyncio.to_thread(session.start, jpeg)
    except UnidentifiedImageError:
        await update.message.reply_text("That doesn't look like an image I can read. Try another photo.")
        return WAIT_RECEIPT
    except ExtractionError as e:
        log.warning("scan_failed", chat_id=update.effective_chat.id, error=str(e))
        await update.message.reply_text(scan_failed_message(e))
        return WAIT_RECEIPT

    _start_split(context, to_receipt(session.snapshot()))
    await _show_split(update, context, "\n\nItems are still loading. Use /people to add who was there.")

    future = session.phase2_future
    if future is not None:
        context.application.create_task(
            _await_items(context, update.effective_chat.id, session, future), update=update
        )
    return SPLITTING


async def _await_items(context: ContextTypes.DEFAULT_TYPE, chat_id: int, session: ScanSession, future):
    """Wait for phase 2 off the event loop; drop the result if the chat moved on."""
    await asyncio.wait({asyncio.wrap_future(future)})
    if future.cancelled() or future is not session.phase2_future:
        return

    if session.status == ITEMS_ERROR:
        await context.bot.send_message(chat_id, f"{session.error}\nYou can still split equally or by custom amounts.")
        return
    if session.status != READY:
        return

    parsed = session.snapshot()
    receipt, draft = context.chat_data.get("receipt"), context.chat_data.get("draft")
    if receipt is None or draft is None:
        return
    receipt, draft = merge_scanned(receipt, draft, to_receipt(parsed), context.chat_data.get("tip_percent"))
    context.chat_data.update(receipt=receipt, draft=draft)

    text = f"🧾 Found {len(receipt.items)} items."
    issues = reconcile_issues(parsed)
    if issues:
        text += "\n" + "\n".join(f"⚠️ {i}" for i in issues)
    await context.bot.send_message(chat_id, text)


async def handle_amount(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Usage: /amount 42.50 [title]")
        return SPLITTING if "draft" in context.chat_data else WAIT_RECEIPT

    _session(context).reset()
    receipt = manual_receipt(" ".join(context.args[1:]), context.args[0])
    _start_split(context, receipt)
    await _show_split(update, context, "\n\nAdd a tip with /tip 18 and people with /people Alice Bob.")
    return SPLITTING


async def handle_tip(update: Update, context: ContextTypes.DEFAULT_TYPE):
    percent = parse_percent(context.args[0]) if context.args else DEFAULT_TIP_PERCENT
    receipt, draft = apply_tip_percent(context.chat_data["receipt"], context.chat_data["draft"], percent)
    context.chat_data.update(receipt=receipt, draft=draft, tip_percent=percent)
    await _show_split(update, context, f"\n\nTip: {format_cents(receipt.tip_cents)}")
    return SPLITTING


async def handle_people(update: Update, context: ContextTypes.DEFAULT_TYPE):
    names = [n.strip() for n in context.args if n.strip()]
    context.chat_data["draft"] = roster_from_names(context.chat_data["draft"], names)
    context.chat_data["guest_index"] = 0
    await _show_split(update, context)
    return SPLITTING


async def _guest_command(update: Update, context: ContextTypes.DEFAULT_TYPE, make_event):
    draft = context.chat_data["draft"]
    idx = find_guest(draft, " ".join(context.args)) if context.args else None
    if idx is None:
        await update.message.reply_text("Who? Use a name or number from the list.")
        return SPLITTING
    context.chat_data["draft"] = transition(draft, make_event(draft.participants[idx].id))
    await _show_split(update, context)
    return SPLITTING


async def handle_payer(update: Update, context: ContextTypes.DEFAULT_TYPE):
    return await _guest_command(update, context, SetPayer)


async def handle_out(update: Update, context: ContextTypes.DEFAULT_TYPE):
    return await _guest_command(update, context, ToggleIncluded)


async def handle_set(update: Update, context: ContextTypes.DEFAULT_TYPE):
    draft = context.chat_data["draft"]
    if len(context.args) < 2:
        await update.message.reply_text("Usage: /set Alice 12.50")
        return SPLITTING
    idx = find_guest(draft, " ".join(context.args[:-1]))
    if idx is None:
        await update.message.reply_text("Who? Use a name or number from the list.")
        return SPLITTING

    if draft.mode != Mode.CUSTOM:
        draft = transition(draft, SelectMode(Mode.CUSTOM))
    context.chat_data["draft"] = transition(draft, SetCustomAmount(idx, parse_to_cents(context.args[-1])))
    await _show_split(update, context)
    return SPLITTING


async def handle_item(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if len(context.args) < 2:
        await update.message.reply_text("Usage: /item Fries 4.50")
        return SPLITTING
    draft = context.chat_data["draft"]
    if not draft.items_seeded:
        draft = transition(draft, SelectMode(Mode.BY_ITEMS, context.chat_data["receipt"]))
    draft = transition(draft, AddItem(" ".join(context.args[:-1]), context.args[-1]))
    context.chat_data["draft"] = draft
    await update.message.reply_text("Who had what?",
                                    reply_markup=item_keyboard(draft, context.chat_data.get("guest_index", 0)))
    return SPLITTING


async def handle_button(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    draft = context.chat_data.get("draft")
    if draft is None:
        await query.edit_message_text("This split is gone. Send a new receipt.")
        return WAIT_RECEIPT

    kind, _, value = query.data.partition("|")
    if kind == "modes":
        await query.edit_message_text(split_text(draft, context.chat_data["receipt"]),
                                      reply_markup=mode_keyboard(draft.mode))
        return SPLITTING

    if kind == "mode":
        draft = transition(draft, SelectMode(Mode(value), context.chat_data["receipt"]))
        context.chat_data["draft"] = draft
        if draft.mode != Mode.BY_ITEMS:
            await query.edit_message_text(split_text(draft, context.chat_data["receipt"]),
                                          reply_markup=mode_keyboard(draft.mode))
            return SPLITTING
        if not draft.items and _session(context).status == ITEMS_LOADING:
            await query.edit_message_text("Items are still loading, hang on...",
                                          reply_markup=item_keyboard(draft, 0))
            return SPLITTING
    elif kind == "guest":
        context.chat_data["guest_index"] = int(value)
    elif kind == "item" and int(value) < len(draft.items):
        guest = draft.participants[min(context.chat_data.get("guest_index", 0), len(draft.participants) - 1)]
        item = draft.items[int(value)]
        context.chat_data["draft"] = draft = transition(draft, ToggleAssignment(item.id, guest.id))

    await query.edit_message_text(split_text(draft, context.chat_data["receipt"]) + "\n\nWho had what?",
                                  reply_markup=item_keyboard(draft, context.chat_data.get("guest_index", 0)))
    return SPLITTING


async def handle_done(update: Update, context: ContextTypes.DEFAULT_TYPE):
    draft, receipt = context.chat_data["draft"], context.chat_data["receipt"]
    settings = _settings(context)
    owed = owed_cents(draft)
    final = apply_draft(draft, receipt)
    payload = build_payload(final, draft, owed)
    link = write_payload_into_url(settings.share_base_url, payload)

    lines = [f"Final split for {final.title} ({format_cents(final.total_cents)}):"]
    lines += summary_lines(payload, settings.my_display_name)
    lines += ["", link]
    log.info("split_finished", chat_id=update.effective_chat.id, mode=draft.mode.value,
             total_cents=final.total_cents, people=len(draft.included))
    await update.message.reply_text("\n".join(lines), reply_markup=main_menu_keyboard())

    _session(context).reset()
    for key in ("receipt", "draft", "guest_index", "tip_percent"):
        context.chat_data.pop(key, None)
    return ConversationHandler.END


async def handle_help(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP)
    return SPLITTING


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE):
    log.error("handler_crashed", error=repr(context.error))


async def _shutdown(application):
    application.bot_data["executor"].shutdown(wait=False)


# --- Main entry ---
def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    application = ApplicationBuilder().token(settings.telegram_token).post_shutdown(_shutdown).build()
    application.bot_data["settings"] = settings
    application.bot_data["executor"] = ThreadPoolExecutor(max_workers=4, thread_name_prefix="phase2")

    restart = MessageHandler(filters.TEXT & filters.Regex(f"^{RESTART_LABEL}$"), handle_restart)
    photo = MessageHandler(filters.PHOTO, handle_receipt)
    amount = CommandHandler("amount", handle_amount)

    conv = ConversationHandler(
        entry_points=[CommandHandler("start", handle_start), CommandHandler("restart", handle_restart),
                      photo, amount, restart],
        states={
            WAIT_RECEIPT: [photo, amount],
            SPLITTING: [
                photo,
                amount,
                CommandHandler("tip", handle_tip),
                CommandHandler("people", handle_people),
                CommandHandler("payer", handle_payer),
                CommandHandler("out", handle_out),
                CommandHandler("set", handle_set),
                CommandHandler("item", handle_item),
                CommandHandler("done", handle_done),
                CommandHandler("help", handle_help),
                CallbackQueryHandler(handle_button),
            ],
        },
        fallbacks=[CommandHandler("restart", handle_restart), restart],
    )

    application.add_handler(conv)
    application.add_error_handler(handle_error)
    log.info("bot_started", model=settings.gemini_model)
    application.run_polling()


if __name__ == "__main__":
    main()
