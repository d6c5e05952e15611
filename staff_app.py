"""
═══════════════════════════════════════════════════════════
 MediQueue — Staff Console
 Call / serve / complete / skip tokens and transfer patients
 between departments or along a service flow. Administrators
 also manage departments, service flows, settings and users,
 and see reports.
═══════════════════════════════════════════════════════════
"""

import html
import logging
import time
from dataclasses import fields
from datetime import datetime, timedelta

import streamlit as st
from streamlit_autorefresh import st_autorefresh
from supabase import AuthApiError

from announcer import AnnouncementCoordinator, BrowserSpeaker
from config import SystemSettings, setup_logging
from db import (
    VER, get_departments_cached, get_flows_cached, get_repository,
    get_settings_cached, get_supabase, invalidate_lookups,
)
from errors import BackendError, QueueError, ValidationError
from models import ALL, CALLED, STATUS_LABELS, STATUSES
from routing import TransferRouter
from rules import (
    ACTION_LABELS, ROLE_LABELS, allowed_departments, call_next, can_act_on_entry,
    can_delete_entry, can_transfer, in_queue_order, next_actions, permissions_for,
    transferable,
)
from session import QueueSession
from views import (
    department_access_filter, department_summary, export_csv, filter_by,
    hourly_completed, queue_stats,
)

setup_logging()
log = logging.getLogger("mediqueue.staff")

st.set_page_config(page_title="MediQueue Staff", page_icon="🩺", layout="centered")

st.markdown("""<style>
.mq-header{background:linear-gradient(135deg,#0B3C5D,#1D70A2);color:#fff!important;padding:18px 22px;border-radius:12px;margin-bottom:16px}
.mq-header h2{margin:0;font-size:22px;color:#fff!important}
.mq-header p{margin:4px 0 0;opacity:.75;font-size:13px;color:#fff!important}
.mq-card{background:var(--secondary-background-color,#fff);border-radius:10px;padding:14px 16px;margin-bottom:8px;border:1px solid rgba(128,128,128,.15)}
.mq-tok{font-family:monospace;font-size:20px;font-weight:900}
.mq-badge{display:inline-block;padding:3px 10px;border-radius:6px;font-size:11px;font-weight:700;background:rgba(51,153,204,.15);color:#3399CC}
.stButton>button{border-radius:8px;font-weight:700}
</style>""", unsafe_allow_html=True)

# ── Auto-refresh drains the change feed ──
st_autorefresh(interval=10_000, limit=None, key="staff_ar")

# ── Session state ──
for k, v in {"profile": None, "fail_count": 0, "lock_until": 0,
             "staff_tab": "queue", "expired_notice": False}.items():
    if k not in st.session_state:
        st.session_state[k] = v

# ═══════════════════════════════════════════════════
#  LOGIN
# ═══════════════════════════════════════════════════
if not st.session_state.profile:
    st.markdown("""<div class="mq-header" style="text-align:center;">
        <h2>Staff Portal</h2><p>MediQueue · Authorized Personnel Only</p></div>""", unsafe_allow_html=True)

    if st.session_state.expired_notice:
        st.warning("Session expired (8-hour limit). Please login again.")

    locked = time.time() < st.session_state.lock_until
    if locked:
        st.error(f"🔒 Locked. Wait {int(st.session_state.lock_until - time.time())}s.")

    with st.form("login"):
        email = st.text_input("Email")
        password = st.text_input("Password", type="password")
        if st.form_submit_button("Login", type="primary", use_container_width=True, disabled=locked):
            profile = None
            try:
                res = get_supabase().auth.sign_in_with_password({"email": email.strip(), "password": password})
                profile = get_repository().profile(res.user.id)
            except AuthApiError as e:
                log.info("Login failed for %s: %s", email, e)
            except BackendError:
                st.error("❌ Could not load your profile. Try again.")
                st.stop()
            if profile:
                st.session_state.profile = profile
                st.session_state.fail_count = 0
                st.session_state.expired_notice = False
                st.session_state.session_start = time.time()
                st.rerun()
            st.session_state.fail_count += 1
            left = 3 - st.session_state.fail_count
            if left <= 0:
                st.session_state.lock_until = time.time() + 300
                st.session_state.fail_count = 0
                st.error("❌ Locked for 5 minutes.")
            else:
                st.error(f"❌ Invalid credentials. {left} attempts left.")
    st.stop()

# ── Max 8h session from login ──
if time.time() - st.session_state.get("session_start", time.time()) > 8 * 3600:
    live = st.session_state.pop("staff_session", None)
    if live is not None:
        live.stop()
    for k in ("staff_announcer", "profile", "session_start"):
        st.session_state.pop(k, None)
    st.session_state.expired_notice = True
    st.rerun()

profile = st.session_state.profile
perms = permissions_for(profile.role)
actor = profile.id
can_admin = perms["manage_departments"] or perms["manage_settings"] or perms["manage_users"]

# ── Load data ──
settings = get_settings_cached()
departments = get_departments_cached()
flows = get_flows_cached()
dept_names = [d.name for d in departments]
repo = get_repository()

if "staff_session" not in st.session_state:
    live = QueueSession(repo)
    try:
        live.start()
    except QueueError as e:
        st.error(f"❌ Could not load the queue: {e}")
        st.stop()
    st.session_state.staff_session = live
if "staff_announcer" not in st.session_state:
    st.session_state.staff_announcer = AnnouncementCoordinator(BrowserSpeaker(settings), settings, departments)

live = st.session_state.staff_session
live.router = TransferRouter(repo, departments, flows)
live.pump()
announcer = st.session_state.staff_announcer
announcer.settings = settings
announcer.speaker.settings = settings
announcer.departments = {d.name: d for d in departments}

# ═══════════════════════════════════════════════════
#  HEADER & NAVIGATION
# ═══════════════════════════════════════════════════
dept_text = ", ".join(profile.all_departments) or "—"
st.markdown(f"""<div class="mq-header">
    <h2>🩺 {html.escape(settings.clinic_name)} · Staff Console</h2>
    <p>{html.escape(profile.full_name)} · {ROLE_LABELS.get(profile.role, profile.role)} · {html.escape(dept_text)} · {VER}</p>
</div>""", unsafe_allow_html=True)

nav = [("📋 Queue", "queue")]
if perms["view_reports"]:
    nav.append(("📊 Reports", "reports"))
if can_admin:
    nav.append(("👔 Admin", "admin"))
nav += [("🔄 Reload", "reload"), ("🚪 Logout", "logout")]

cols = st.columns(len(nav))
for i, (lbl, key) in enumerate(nav):
    with cols[i]:
        if key == "logout":
            if st.button(lbl, use_container_width=True):
                live.stop()
                for k in ("staff_session", "staff_announcer", "profile", "session_start"):
                    st.session_state.pop(k, None)
                st.session_state.staff_tab = "queue"
                st.rerun()
        elif key == "reload":
            if st.button(lbl, use_container_width=True):
                invalidate_lookups()
                live.refresh()
                st.rerun()
        else:
            bt = "primary" if st.session_state.staff_tab == key else "secondary"
            if st.button(lbl, use_container_width=True, type=bt):
                st.session_state.staff_tab = key
                st.rerun()

tab = st.session_state.staff_tab


def run_action(label, fn, *args):
    """Run a write and report the outcome; the cache is already rolled back on failure."""
    announcer.unlock()
    try:
        result = fn(*args)
    except ValidationError as e:
        st.error(f"❌ {e}")
        return None
    except QueueError as e:
        st.error(f"❌ {label} did not take effect: {e}")
        return None
    return True if result is None else result


# ═══════════════════════════════════════════════════
#  QUEUE TAB
# ═══════════════════════════════════════════════════
if tab == "queue":
    visible = department_access_filter(live.entries, profile.role, profile.all_departments,
                                       settings.staff_access_own_department)

    stats = queue_stats(visible)
    m = st.columns(4)
    m[0].metric("Total", stats["total"])
    m[1].metric("Waiting", stats["waiting"])
    m[2].metric("In progress", stats["in_progress"])
    m[3].metric("Completed", stats["completed"])
    st.caption(f"Avg wait {stats['avg_wait_min']} min · Avg service {stats['avg_service_min']} min")

    scope = allowed_departments(profile)
    if settings.staff_access_own_department and ALL not in scope:
        dept_options = [d for d in dept_names if d in scope]
    else:
        dept_options = [ALL] + dept_names
    own_default = profile.department if profile.department in dept_options else dept_options[0] if dept_options else ALL
    fc1, fc2 = st.columns(2)
    with fc1:
        sel_dept = st.selectbox("Department", dept_options or [ALL],
                                index=dept_options.index(own_default) if own_default in dept_options else 0)
    with fc2:
        sel_status = st.selectbox("Status", [ALL] + list(STATUSES))

    if perms["call_tokens"] and sel_dept != ALL:
        if st.button(f"📣 Call next in {sel_dept}", type="primary", use_container_width=True):
            nxt = call_next(visible, sel_dept)
            if nxt is None:
                st.info("Nobody is waiting.")
            elif not can_act_on_entry(profile, nxt, settings):
                st.error("❌ You can only call tokens in your own department.")
            else:
                done = run_action("Call next", live.call, nxt.id, actor)
                if done:
                    announcer.recall(done)
                    st.success(f"Called {done.token}")

    shown = in_queue_order(filter_by(visible, sel_dept, sel_status))
    if not shown:
        st.info("No tokens match these filters.")

    transfer_ok = can_transfer(profile, settings)
    may_delete = can_delete_entry(profile)

    for e in shown:
        pri = ' <span class="mq-badge" style="background:rgba(220,53,69,.15);color:#ef4444;">🚨 Emergency</span>' if e.is_emergency else ""
        moved = f"<br/><span style='font-size:11px;opacity:.6;'>from {html.escape(e.transferred_from)}</span>" if e.transferred_from else ""
        wants = f"<br/><span style='font-size:11px;opacity:.6;'>Service: {html.escape(e.intended_department)}</span>" if e.intended_department else ""
        st.markdown(f"""<div class="mq-card"><div style="display:flex;justify-content:space-between;">
            <div><span class="mq-tok">{html.escape(e.token)}</span>{pri}<br/>
                <strong>{html.escape(e.full_name)}</strong> · {html.escape(e.department)}{moved}{wants}</div>
            <div style="text-align:right;"><span class="mq-badge">{STATUS_LABELS.get(e.status, e.status)}</span><br/>
                <span style="font-size:11px;opacity:.6;">{e.timestamp:%H:%M}</span></div>
        </div></div>""", unsafe_allow_html=True)

        acts = can_act_on_entry(profile, e, settings)
        if not acts and not may_delete:
            continue

        actions = list(next_actions(e.status)) if acts else []
        may_move = acts and transfer_ok and transferable(e)
        cols = st.columns(len(actions) + (1 if e.status == CALLED and acts else 0)
                          + (1 if may_move else 0) + (1 if may_delete else 0) or 1)
        i = 0
        for target in actions:
            with cols[i]:
                if st.button(ACTION_LABELS[target], key=f"{target}_{e.id}", use_container_width=True):
                    done = run_action(ACTION_LABELS[target], live.transition, e.id, target, actor)
                    if done:
                        if target == CALLED:
                            announcer.recall(done)
                        st.rerun()
            i += 1
        if e.status == CALLED and acts:
            with cols[i]:
                if st.button("🔁 Recall", key=f"recall_{e.id}", use_container_width=True):
                    announcer.unlock()
                    announcer.recall(e)
            i += 1
        if may_move:
            with cols[i]:
                if st.button("🔀 Transfer", key=f"xbtn_{e.id}", use_container_width=True):
                    st.session_state[f"xfer_{e.id}"] = True
                    st.rerun()
            i += 1
        if may_delete:
            with cols[i]:
                if st.button("🗑️ Delete", key=f"del_{e.id}", use_container_width=True):
                    st.session_state[f"del_{e.id}_confirm"] = True
                    st.rerun()

        # ── DELETE CONFIRMATION ──
        if may_delete and st.session_state.get(f"del_{e.id}_confirm"):
            st.warning(f"Delete {e.token} ({e.full_name})? This cannot be undone.")
            dc1, dc2 = st.columns(2)
            with dc1:
                if st.button("🗑️ Yes, delete", key=f"delok_{e.id}", type="primary", use_container_width=True):
                    if run_action("Delete", live.delete, e.id):
                        st.session_state.pop(f"del_{e.id}_confirm", None)
                        st.rerun()
            with dc2:
                if st.button("Keep", key=f"delno_{e.id}", use_container_width=True):
                    st.session_state.pop(f"del_{e.id}_confirm", None)
                    st.rerun()

        # ── TRANSFER PANEL ──
        if may_move and st.session_state.get(f"xfer_{e.id}"):
            router = live.router
            tab_manual, tab_flow = st.tabs(["🔀 Department", "🧭 Service flow"])
            with tab_manual:
                targets = [d.name for d in router.targets(e.department)]
                suggested = router.suggested(e)
                idx = targets.index(suggested) if suggested in targets else 0
                to_dept = st.selectbox("Transfer to", targets, index=idx, key=f"xto_{e.id}") if targets else None
                default_reason = f"Transfer to intended department: {suggested}" if suggested else ""
                reason = st.text_input("Reason (optional)", value=default_reason, key=f"xr_{e.id}")
                if st.button("✅ Confirm transfer", key=f"xok_{e.id}", type="primary",
                             use_container_width=True, disabled=not targets):
                    out = run_action("Transfer", live.transfer, e.id, to_dept, actor, reason)
                    if out:
                        announcer.announce_transfer(e.token, e.department, to_dept)
                        st.session_state[f"xfer_{e.id}"] = False
                        st.rerun()
            with tab_flow:
                offered = router.offered_flows(e.department)
                if not offered:
                    st.info(f"No service flows start from {e.department}.")
                else:
                    names = {f.name: f.id for f in offered}
                    flow_name = st.selectbox("Service flow", list(names), key=f"xf_{e.id}")
                    try:
                        dest = router.plan_flow(e, names[flow_name])
                    except ValidationError as err:
                        dest = None
                        st.warning(str(err))
                    if dest:
                        st.caption(f"Next stop: **{dest}**")
                    else:
                        st.caption("Patient has completed this flow.")
                    f_reason = st.text_input("Note (optional)", key=f"xfr_{e.id}")
                    if st.button("🧭 Send to next stop", key=f"xfok_{e.id}", type="primary",
                                 use_container_width=True, disabled=not dest):
                        out = run_action("Flow transfer", live.transfer_by_flow, e.id, names[flow_name], actor, f_reason)
                        if out and out.flow_complete:
                            st.error("Patient has completed this flow.")
                        elif out:
                            announcer.announce_transfer(e.token, e.department, out.entry.department)
                            st.session_state[f"xfer_{e.id}"] = False
                            st.rerun()
            if st.button("← Cancel", key=f"xc_{e.id}", use_container_width=True):
                st.session_state[f"xfer_{e.id}"] = False
                st.rerun()


# ═══════════════════════════════════════════════════
#  REPORTS TAB
# ═══════════════════════════════════════════════════
elif tab == "reports" and perms["view_reports"]:
    st.markdown("### 📊 Reports")
    today = datetime.now().date()
    r1, r2 = st.columns(2)
    with r1:
        d_from = st.date_input("From", value=today - timedelta(days=6), key="rep_from")
    with r2:
        d_to = st.date_input("To", value=today, key="rep_to")
    if d_from > d_to:
        st.error("❌ 'From' must not be after 'To'.")
        st.stop()

    start = datetime.combine(d_from, datetime.min.time()).astimezone()
    end = datetime.combine(d_to + timedelta(days=1), datetime.min.time()).astimezone()
    try:
        rows = repo.list_range(start, end)
    except QueueError as e:
        st.error(f"❌ Could not load the report: {e}")
        st.stop()

    stats = queue_stats(rows)
    m = st.columns(4)
    m[0].metric("Tokens", stats["total"])
    m[1].metric("Completed", stats["completed"])
    m[2].metric("Avg wait (min)", stats["avg_wait_min"])
    m[3].metric("Avg service (min)", stats["avg_service_min"])

    if rows:
        st.markdown("**Completed by hour**")
        st.bar_chart({"Completed": hourly_completed(rows, tz=start.tzinfo)})
        st.markdown("**By department**")
        st.dataframe([{"Department": d, "Total": s["total"], "Completed": s["completed"], "Skipped": s["skipped"]}
                      for d, s in department_summary(rows).items()],
                     use_container_width=True, hide_index=True)
        st.download_button("⬇️ Export CSV", export_csv(rows),
                           file_name=f"queue_{d_from:%Y%m%d}_{d_to:%Y%m%d}.csv",
                           mime="text/csv", use_container_width=True)
    else:
        st.info("No tokens in this range.")


# ═══════════════════════════════════════════════════
#  ADMIN TAB
# ═══════════════════════════════════════════════════
elif tab == "admin" and can_admin:
    sections = []
    if perms["manage_departments"]:
        sections += ["🏥 Departments", "🧭 Service flows"]
    if perms["manage_settings"]:
        sections.append("⚙️ Settings")
    if perms["manage_users"]:
        sections.append("👥 Users")
    panes = dict(zip(sections, st.tabs(sections)))

    def admin_write(label, fn, *args, **kwargs):
        try:
            fn(*args, **kwargs)
        except QueueError as e:
            st.error(f"❌ {label}: {e}")
            return False
        st.success(f"✅ {label}")
        return True

    # ── Departments ──
    if "🏥 Departments" in panes:
        with panes["🏥 Departments"]:
            all_depts = repo.departments(active_only=False)
            with st.expander("➕ Add department"):
                with st.form("dept_add", clear_on_submit=True):
                    a1, a2 = st.columns(2)
                    with a1:
                        n_name = st.text_input("Name")
                    with a2:
                        n_prefix = st.text_input("Token prefix", max_chars=5)
                    n_color = st.color_picker("Color", value="#6B7280")
                    n_internal = st.checkbox("Internal (not offered at the kiosk)")
                    n_tmpl = st.text_input("Announcement template (optional)")
                    if st.form_submit_button("Add", type="primary", use_container_width=True):
                        if admin_write(f"Added {n_name.strip()}", repo.add_department, n_name, n_prefix,
                                       n_color, n_internal, n_tmpl):
                            st.rerun()
            for d in all_depts:
                state = "" if d.is_active else " · inactive"
                with st.expander(f"{d.prefix} · {d.name}{state}"):
                    with st.form(f"dept_{d.id}"):
                        e1, e2 = st.columns(2)
                        with e1:
                            u_name = st.text_input("Name", value=d.name)
                        with e2:
                            u_prefix = st.text_input("Token prefix", value=d.prefix, max_chars=5)
                        u_color = st.color_picker("Color", value=d.color_code or "#6B7280")
                        u_active = st.checkbox("Active", value=d.is_active)
                        u_internal = st.checkbox("Internal", value=d.is_internal)
                        u_tmpl = st.text_input("Announcement template", value=d.announcement_template or "")
                        s1, s2 = st.columns(2)
                        with s1:
                            save = st.form_submit_button("💾 Save", type="primary", use_container_width=True)
                        with s2:
                            drop = st.form_submit_button("🗑️ Delete", use_container_width=True)
                    if save and admin_write(f"Saved {u_name.strip()}", repo.update_department, d,
                                            name=u_name, prefix=u_prefix, color_code=u_color,
                                            is_active=u_active, is_internal=u_internal,
                                            announcement_template=u_tmpl):
                        st.rerun()
                    if drop and admin_write(f"Deleted {d.name}", repo.delete_department, d):
                        st.rerun()

    # ── Service flows ──
    if "🧭 Service flows" in panes:
        with panes["🧭 Service flows"]:
            known = [d.name for d in repo.departments(active_only=False)]
            st.caption("Stops are visited in the order they are picked.")
            with st.expander("➕ Add service flow"):
                with st.form("flow_add", clear_on_submit=True):
                    f_name = st.text_input("Name")
                    f_stops = st.multiselect("Departments", known)
                    f_desc = st.text_input("Description")
                    if st.form_submit_button("Add", type="primary", use_container_width=True):
                        if admin_write(f"Added {f_name.strip()}", repo.add_flow, f_name, f_stops, f_desc, known):
                            st.rerun()
            for fl in repo.service_flows(active_only=False):
                state = "" if fl.is_active else " · inactive"
                with st.expander(f"{fl.name}{state} · {' → '.join(fl.flow_departments)}"):
                    with st.form(f"flow_{fl.id}"):
                        g_name = st.text_input("Name", value=fl.name)
                        g_stops = st.multiselect("Departments", known,
                                                 default=[s for s in fl.flow_departments if s in known])
                        g_desc = st.text_input("Description", value=fl.description or "")
                        g_active = st.checkbox("Active", value=fl.is_active)
                        s1, s2 = st.columns(2)
                        with s1:
                            save = st.form_submit_button("💾 Save", type="primary", use_container_width=True)
                        with s2:
                            drop = st.form_submit_button("🗑️ Delete", use_container_width=True)
                    if save and admin_write(f"Saved {g_name.strip()}", repo.update_flow, fl.id, g_name,
                                            g_stops, g_desc, g_active, known):
                        st.rerun()
                    if drop and admin_write(f"Deleted {fl.name}", repo.delete_flow, fl.id):
                        st.rerun()

    # ── Settings ──
    if "⚙️ Settings" in panes:
        with panes["⚙️ Settings"]:
            with st.form("settings"):
                edited = {}
                for f in fields(SystemSettings):
                    value = getattr(settings, f.name)
                    label = f.name.replace("_", " ").capitalize()
                    if f.type is bool:
                        edited[f.name] = st.checkbox(label, value=value)
                    elif f.type is float:
                        edited[f.name] = st.number_input(label, value=float(value), step=0.1)
                    else:
                        edited[f.name] = st.text_input(label, value=value or "")
                if st.form_submit_button("💾 Save settings", type="primary", use_container_width=True):
                    before = {k: getattr(settings, k) for k in edited}
                    changed = {k: v for k, v in edited.items() if v != ("" if before[k] is None else before[k])}
                    ok = all(admin_write(f"Saved {k}", repo.save_setting, k,
                                         str(v).lower() if isinstance(v, bool) else str(v))
                             for k, v in changed.items())
                    if not changed:
                        st.info("Nothing changed.")
                    elif ok:
                        st.rerun()

    # ── Users ──
    if "👥 Users" in panes:
        with panes["👥 Users"]:
            try:
                people = repo.profiles()
            except QueueError as e:
                st.error(f"❌ Could not load users: {e}")
                people = []
            roles = list(ROLE_LABELS)
            for p in people:
                with st.expander(f"{p.full_name} · {ROLE_LABELS.get(p.role, p.role)} · {p.department or '—'}"):
                    with st.form(f"user_{p.id}"):
                        p_role = st.selectbox("Role", roles, format_func=ROLE_LABELS.get,
                                              index=roles.index(p.role) if p.role in roles else 0)
                        p_opts = ["—"] + dept_names
                        p_dept = st.selectbox("Department", p_opts,
                                              index=p_opts.index(p.department) if p.department in p_opts else 0)
                        if st.form_submit_button("💾 Save", type="primary", use_container_width=True):
                            if admin_write(f"Saved {p.full_name}", repo.update_profile, p.id, p_role,
                                           None if p_dept == "—" else p_dept):
                                st.rerun()

announcer.speaker.render()
