"""
═══════════════════════════════════════════════════════════
 MediQueue — Public Display
 Now-serving board for one department or all of them. Changes
 arrive over the realtime feed and are drained on every refresh;
 each open display announces a new call once.
═══════════════════════════════════════════════════════════
"""

import html
import logging

import streamlit as st
from streamlit_autorefresh import st_autorefresh

from announcer import AnnouncementCoordinator, BrowserSpeaker
from config import setup_logging
from db import get_departments_cached, get_repository, get_settings_cached
from errors import QueueError
from session import QueueSession
from views import currently_serving, department_boards, next_waiting

setup_logging()
log = logging.getLogger("mediqueue.display")

st.set_page_config(page_title="MediQueue Display", page_icon="📺", layout="wide")

st.markdown("""<style>
.mq-header{background:linear-gradient(135deg,#0B3C5D,#1D70A2);color:#fff!important;padding:14px 22px;border-radius:12px;margin-bottom:16px}
.mq-header h2{margin:0;font-size:26px;color:#fff!important}
.mq-serving{border-radius:14px;padding:22px;text-align:center;color:#fff;margin-bottom:12px}
.mq-serving .tok{font-family:monospace;font-size:72px;font-weight:900;line-height:1.1}
.mq-serving .lbl{font-size:16px;opacity:.85;font-weight:600}
.mq-next{font-family:monospace;font-size:24px;font-weight:800;padding:8px 12px;margin:4px 0;border-radius:8px;background:var(--secondary-background-color,#f5f5f5)}
.mq-board{border-radius:12px;padding:12px;border:1px solid rgba(128,128,128,.2);margin-bottom:12px}
</style>""", unsafe_allow_html=True)

# ── Drain the change feed every 3s ──
st_autorefresh(interval=3_000, limit=None, key="display_ar")

ALL_LABEL = "All departments"

settings = get_settings_cached()
departments = get_departments_cached()
dept_by_name = {d.name: d for d in departments}

if "speaker" not in st.session_state:
    st.session_state.speaker = BrowserSpeaker(settings)
if "coordinator" not in st.session_state:
    st.session_state.coordinator = AnnouncementCoordinator(st.session_state.speaker, settings, departments)

# ── Controls ──
with st.sidebar:
    choice = st.selectbox("Department", [ALL_LABEL] + list(dept_by_name))
    audio_on = st.toggle("Audio announcements", value=True)
    if not st.session_state.coordinator.user_interacted:
        if st.button("🔊 Enable audio", type="primary", use_container_width=True):
            st.session_state.coordinator.unlock()

# ── Session state: one live queue per display, rebuilt when the department changes ──
if st.session_state.get("display_dept") != choice:
    old = st.session_state.get("display_session")
    if old is not None:
        old.stop()
    st.session_state.display_session = None
    st.session_state.display_dept = choice

speaker = st.session_state.speaker
coordinator = st.session_state.coordinator
speaker.settings = settings
coordinator.settings = settings
coordinator.departments = dept_by_name
coordinator.audio_enabled = audio_on

if st.session_state.display_session is None:
    live = QueueSession(get_repository())
    try:
        live.start()
    except QueueError as e:
        st.error(f"❌ Could not load the queue: {e}")
        st.stop()
    st.session_state.display_session = live

live = st.session_state.display_session
live.pump()
entries = live.entries

st.markdown(f"""<div class="mq-header"><h2>🏥 {html.escape(settings.clinic_name)} · {html.escape(choice)}</h2></div>""",
            unsafe_allow_html=True)


def serving_card(entry, dept_name):
    dept = dept_by_name.get(dept_name)
    color = dept.color_code if dept else "#1D70A2"
    if entry is None:
        return f"""<div class="mq-serving" style="background:{color};opacity:.6;">
            <div class="lbl">{html.escape(dept_name)}</div><div class="tok">—</div>
            <div class="lbl">Please wait for the next announcement</div></div>"""
    room = f" · {html.escape(dept.counter)}" if dept and dept.counter else ""
    return f"""<div class="mq-serving" style="background:{color};">
        <div class="lbl">NOW SERVING · {html.escape(dept_name)}{room}</div>
        <div class="tok">{html.escape(entry.token)}</div>
        <div class="lbl">{html.escape(entry.status)}</div></div>"""


def next_list(waiting):
    if not waiting:
        return '<div style="opacity:.6;">No one waiting</div>'
    return "".join(f'<div class="mq-next">{"🚨 " if e.is_emergency else ""}{html.escape(e.token)}</div>'
                   for e in waiting)


# ═══════════════════════════════════════════════════
#  SINGLE DEPARTMENT
# ═══════════════════════════════════════════════════
if choice != ALL_LABEL:
    serving = currently_serving(entries, choice)
    coordinator.observe(serving, key=choice)
    c1, c2 = st.columns([2, 1])
    with c1:
        st.markdown(serving_card(serving, choice), unsafe_allow_html=True)
    with c2:
        st.markdown("#### Next in queue")
        st.markdown(next_list(next_waiting(entries, choice, 5)), unsafe_allow_html=True)

# ═══════════════════════════════════════════════════
#  ALL DEPARTMENTS
# ═══════════════════════════════════════════════════
else:
    boards = department_boards(entries, list(dept_by_name))
    coordinator.observe_boards(boards)
    cols = st.columns(3)
    for i, board in enumerate(boards.values()):
        with cols[i % 3]:
            st.markdown(serving_card(board.serving, board.department), unsafe_allow_html=True)
            st.markdown(next_list(board.waiting), unsafe_allow_html=True)
            st.caption(f"{board.total_waiting} waiting")

speaker.render()

if not coordinator.user_interacted:
    st.caption("🔇 Click **Enable audio** in the sidebar to hear announcements.")
elif not settings.announcements_on:
    st.caption("🔇 Voice announcements are turned off in settings.")
