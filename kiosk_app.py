"""
═══════════════════════════════════════════════════════════
 MediQueue — Patient Kiosk
 Patients pick a service and receive a token. When a Reception
 desk is active every patient reports there first; the chosen
 service is kept as the entry's intended department.
═══════════════════════════════════════════════════════════
"""

import html
import logging

import streamlit as st
import streamlit.components.v1 as components
from streamlit_autorefresh import st_autorefresh

from config import setup_logging
from db import VER, get_departments_cached, get_repository, get_settings_cached
from errors import BackendError, ValidationError
from models import EMERGENCY, NORMAL, RECEPTION, QueueDraft
from rules import generate_token

setup_logging()
log = logging.getLogger("mediqueue.kiosk")

st.set_page_config(page_title="MediQueue Kiosk", page_icon="🎫", layout="centered")

st.markdown("""<style>
.mq-header{background:linear-gradient(135deg,#0B3C5D,#1D70A2);color:#fff!important;padding:18px 22px;border-radius:12px;margin-bottom:16px;text-align:center}
.mq-header h2{margin:0;font-size:24px;color:#fff!important}
.mq-header p{margin:4px 0 0;opacity:.75;font-size:13px;color:#fff!important}
.mq-token{font-family:monospace;font-size:56px;font-weight:900;text-align:center;letter-spacing:2px}
.mq-card{background:var(--secondary-background-color,#fff);border-radius:10px;padding:18px;margin-bottom:12px;border:1px solid rgba(128,128,128,.15);text-align:center}
.stButton>button{border-radius:8px;font-weight:700}
</style>""", unsafe_allow_html=True)

# ── Session state ──
if "ticket" not in st.session_state:
    st.session_state.ticket = None

# ── Return to the form 20s after a ticket is shown ──
if st.session_state.ticket:
    if st_autorefresh(interval=20_000, limit=2, key=f"kiosk_reset_{st.session_state.ticket.id}") >= 1:
        st.session_state.ticket = None

settings = get_settings_cached()
departments = get_departments_cached()
dept_by_name = {d.name: d for d in departments}
services = [d for d in departments if not d.is_internal and d.name != RECEPTION]
reception = dept_by_name.get(RECEPTION)

st.markdown(f"""<div class="mq-header">
    <h2>🏥 {html.escape(settings.clinic_name)}</h2>
    <p>Get your queue token · {VER}</p>
</div>""", unsafe_allow_html=True)


def print_ticket(entry, service):
    """Open the browser print dialog with a minimal ticket."""
    color = service.color_code if service else "#111"
    ticket = f"""<div style="font-family:sans-serif;text-align:center;padding:8px;">
        <div style="font-size:14px;">{html.escape(settings.clinic_name)}</div>
        <div style="font-size:48px;font-weight:900;color:{color};">{html.escape(entry.token)}</div>
        <div>{html.escape(service.name if service else entry.department)}</div>
        {"<div style='font-weight:700;'>EMERGENCY</div>" if entry.is_emergency else ""}
        <div style="font-size:11px;">{entry.timestamp:%Y-%m-%d %H:%M}</div>
    </div>"""
    # silent printing relies on the kiosk browser's --kiosk-printing flag
    components.html(ticket + "<script>window.print();</script>", height=160)


# ═══════════════════════════════════════════════════
#  TICKET CONFIRMATION
# ═══════════════════════════════════════════════════
if st.session_state.ticket:
    t = st.session_state.ticket
    service = dept_by_name.get(t.intended_department or t.department)
    color = service.color_code if service else "#1D70A2"
    report_to = (f"Please report to <b>{RECEPTION}</b> first."
                 if t.department == RECEPTION else f"Please wait for your call at <b>{html.escape(t.department)}</b>.")
    badge = ('<div style="margin-top:6px;"><span style="background:rgba(220,53,69,.15);color:#ef4444;'
             'padding:3px 10px;border-radius:6px;font-weight:700;">🚨 Emergency</span></div>'
             if t.is_emergency else "")
    issued = f"{t.timestamp:%Y-%m-%d %H:%M}" if t.timestamp else ""
    st.markdown(f"""<div class="mq-card">
        <div style="opacity:.7;">Your token</div>
        <div class="mq-token" style="color:{color};">{html.escape(t.token)}</div>
        {badge}
        <div style="font-size:18px;">{html.escape(service.name if service else t.department)}</div>
        <div style="margin-top:8px;">{report_to}</div>
        <div style="font-size:11px;opacity:.6;margin-top:6px;">Issued {issued}</div>
    </div>""", unsafe_allow_html=True)
    if settings.enable_auto_print:
        print_ticket(t, service)
    elif not settings.enable_silent_printing and st.button("🖨️ Print ticket", use_container_width=True):
        print_ticket(t, service)
    if st.button("➕ New token", type="primary", use_container_width=True):
        st.session_state.ticket = None
        st.rerun()
    st.stop()

# ═══════════════════════════════════════════════════
#  TOKEN FORM
# ═══════════════════════════════════════════════════
if not services:
    st.warning("No services are open right now. Please ask at the front desk.")
    st.stop()

with st.form("token_form", clear_on_submit=True):
    full_name = st.text_input("Patient full name *")
    phone = st.text_input("Phone number (optional)")
    service_name = st.selectbox("Service *", [d.name for d in services])
    emergency = st.checkbox("🚨 Emergency")
    submitted = st.form_submit_button("🎫 Get token", type="primary", use_container_width=True)

if submitted:
    service = dept_by_name[service_name]
    via_reception = reception is not None and reception.is_active
    draft = QueueDraft(
        full_name=full_name,
        phone_number=phone,
        department=RECEPTION if via_reception else service.name,
        intended_department=service.name if via_reception else None,
        priority=EMERGENCY if emergency else NORMAL,
    )
    try:
        entry = get_repository().create(draft, generate_token(service.prefix),
                                        departments=list(dept_by_name))
    except ValidationError as e:
        st.error(f"❌ {e}")
    except BackendError:
        st.error("❌ Failed to generate token. Please try again.")
    else:
        st.session_state.ticket = entry
        st.rerun()
