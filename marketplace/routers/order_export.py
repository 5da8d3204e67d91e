# marketplace/routers/order_export.py
from decimal import Decimal
from io import BytesIO
import os
from urllib.parse import quote  # ← для RFC 5987

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from marketplace.config import BASE_DIR
from marketplace.db import get_db
from marketplace.models import Order
from marketplace.services.orders import OrderService

# ===== PDF =====
from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

# ===== XLSX =====
from openpyxl import Workbook

router = APIRouter(prefix="/orders", tags=["orders-export"])

FONT_PATH = os.path.join(BASE_DIR, "marketplace", "static", "fonts", "DejaVuSans.ttf")


def _register_font() -> str:
    """DejaVu, если шрифт лежит в static/fonts (нужен для кириллицы), иначе встроенный Helvetica."""
    try:
        pdfmetrics.getFont("DejaVu")
        return "DejaVu"
    except Exception:
        if os.path.exists(FONT_PATH):
            pdfmetrics.registerFont(TTFont("DejaVu", FONT_PATH))
            return "DejaVu"
    return "Helvetica"


def _content_disposition_utf8(pretty_filename_utf8: str, fallback_ascii: str) -> str:
    """
    Content-Disposition с ASCII-фолбэком и UTF-8 вариантом по RFC 5987.
    Заголовки должны быть latin-1, поэтому UTF-8 имя экранируем.
    """
    return "attachment; filename=\"{fallback}\"; filename*=UTF-8''{utf8}".format(
        fallback=fallback_ascii.replace('"', ''),
        utf8=quote(pretty_filename_utf8, safe="")
    )


def _variant_label(selection) -> str:
    if not selection:
        return "—"
    if isinstance(selection, dict):
        inner = selection.get("variant")
        if isinstance(inner, dict):
            return str(inner.get("name") or inner.get("nom") or "—")
        if inner:
            return str(inner)
        return ", ".join(f"{k}: {v}" for k, v in selection.items())
    return str(selection)


def _filenames(order: Order, ext: str):
    date_str = order.created_at.strftime("%Y-%m-%d_%H-%M")
    name = (order.customer_name or "Клиент").strip()
    pretty = f"Заказ {order.number} {name} {date_str}.{ext}"
    fallback = f"order_{order.number}_{date_str}.{ext}"
    return pretty, fallback


# ---------- PDF ----------
@router.get("/{order_id}/export.pdf")
def order_export_pdf(order_id: int, db: Session = Depends(get_db)):
    order = OrderService(db).get(order_id)
    font = _register_font()

    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf, pagesize=A4,
        leftMargin=30, rightMargin=30, topMargin=30, bottomMargin=30
    )
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="DejaTitle", parent=styles["Title"], fontName=font))
    styles.add(ParagraphStyle(name="Deja", parent=styles["Normal"], fontName=font))
    styles.add(ParagraphStyle(
        name="DejaWrap",
        parent=styles["Normal"],
        fontName=font,
        wordWrap="CJK",   # перенос строк
        fontSize=9,
        leading=11,
    ))

    elems = [Paragraph(f"Заказ № {order.number}", styles["DejaTitle"])]

    # Шапка
    meta = (
        f"Клиент: {order.customer_name or '—'}<br/>"
        f"Телефон: {order.customer_phone or '—'}<br/>"
        f"Адрес: {order.customer_address or '—'}, {order.customer_district or ''} {order.customer_city or ''}<br/>"
        f"Статус: {order.status} / оплата: {order.payment_status}<br/>"
        f"Время: {order.created_at.strftime('%Y-%m-%d %H:%M')}"
    )
    elems += [Spacer(1, 8), Paragraph(meta, styles["Deja"]), Spacer(1, 12)]

    # Таблица
    data = [[Paragraph(h, styles["DejaWrap"]) for h in ("Наименование", "Вариант", "Кол-во", "Цена", "Сумма")]]
    for line in order.lines:
        data.append([
            Paragraph(line.product_name or "—", styles["DejaWrap"]),
            Paragraph(_variant_label(line.selected_variant), styles["DejaWrap"]),
            Paragraph(str(int(line.quantity)), styles["DejaWrap"]),
            Paragraph(f"{Decimal(str(line.unit_price)):.2f}", styles["DejaWrap"]),
            Paragraph(f"{Decimal(str(line.line_total)):.2f}", styles["DejaWrap"]),
        ])

    for label, value in (
        ("Подытог:", order.subtotal),
        ("Доставка:", order.shipping_fee),
        ("Налоги:", order.taxes),
        ("Скидка:", order.discount),
        ("Итого:", order.total),
    ):
        data.append(["", "", "",
                     Paragraph(label, styles["DejaWrap"]),
                     Paragraph(f"{Decimal(str(value or 0)):.2f}", styles["DejaWrap"])])

    table = Table(data, colWidths=[170, 120, 50, 80, 80])
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, -1), font),
        ("BACKGROUND", (0, 0), (-1, 0), colors.whitesmoke),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("ALIGN", (2, 1), (4, -1), "RIGHT"),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
    ]))
    elems.append(table)

    doc.build(elems)
    buf.seek(0)

    pretty, fallback = _filenames(order, "pdf")
    headers = {"Content-Disposition": _content_disposition_utf8(pretty, fallback)}
    return StreamingResponse(buf, media_type="application/pdf", headers=headers)


# ---------- XLSX ----------
@router.get("/{order_id}/export.xlsx")
def order_export_xlsx(order_id: int, db: Session = Depends(get_db)):
    order = OrderService(db).get(order_id)

    wb = Workbook()
    ws = wb.active
    ws.title = "Заказ"

    ws.append([f"Заказ № {order.number}"])
    ws.append(["Клиент", order.customer_name or "—"])
    ws.append(["Телефон", order.customer_phone or "—"])
    ws.append(["Адрес", order.customer_address or "—"])
    ws.append(["Город", order.customer_city or "—"])
    ws.append(["Статус", order.status])
    ws.append(["Оплата", order.payment_status])
    ws.append(["Время", order.created_at.strftime("%Y-%m-%d %H:%M")])
    ws.append([])

    ws.append(["Наименование", "Вариант", "Кол-во", "Цена", "Сумма"])
    for line in order.lines:
        ws.append([
            line.product_name,
            _variant_label(line.selected_variant),
            int(line.quantity),
            float(line.unit_price),
            float(line.line_total),
        ])

    ws.append([])
    ws.append(["", "", "", "Подытог:", float(order.subtotal)])
    ws.append(["", "", "", "Доставка:", float(order.shipping_fee)])
    ws.append(["", "", "", "Налоги:", float(order.taxes)])
    ws.append(["", "", "", "Скидка:", float(order.discount)])
    ws.append(["", "", "", "Итого:", float(order.total)])

    # ширина колонок
    ws.column_dimensions["A"].width = 28  # Наименование
    ws.column_dimensions["B"].width = 18  # Вариант

    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)

    pretty, fallback = _filenames(order, "xlsx")
    headers = {"Content-Disposition": _content_disposition_utf8(pretty, fallback)}
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )
