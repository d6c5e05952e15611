"""
═══════════════════════════════════════════════════════════
 MediQueue — Announcements
 Turns "now serving" changes into at most one spoken/visual
 announcement per token per call. The speaker is injected so a
 display page or a test fake can play it.
═══════════════════════════════════════════════════════════
"""

import json
import logging
from dataclasses import dataclass

import streamlit.components.v1 as components

from models import CALLED
from rules import split_token

log = logging.getLogger("mediqueue.announcer")

DEFAULT_TEMPLATE = "Token {number}, please proceed to {room}, {department} at {hospitalName}"
TRANSFER_TEMPLATE = "Token {number}, please move from {from} to {to}{at}"


def render_template(template, token, department, hospital_name="", room=""):
    """Fill the known placeholders; anything else in braces is left as written."""
    prefix, _ = split_token(token)
    return (template
            .replace("{number}", token)
            .replace("{prefix}", prefix)
            .replace("{department}", department or "")
            .replace("{hospitalName}", hospital_name or "")
            .replace("{room}", room or ""))


@dataclass
class Announcement:
    token: str
    department: str
    text: str
    key: object = None


# ═══════════════════════════════════════════════════
#  SPEAKERS
# ═══════════════════════════════════════════════════
class Speaker:
    def speak(self, text, chime=False):
        raise NotImplementedError


_BROWSER_SCRIPT = """
<script>
const items = %(items)s;
const voice = %(voice)s;
const synth = window.speechSynthesis;
function chime() {
  return new Promise((resolve) => {
    try {
      const ctx = new AudioContext();
      const tone = (f, t) => {
        const o = ctx.createOscillator(), g = ctx.createGain();
        o.connect(g); g.connect(ctx.destination);
        o.frequency.setValueAtTime(f, t); o.type = "sine";
        g.gain.setValueAtTime(0, t);
        g.gain.linearRampToValueAtTime(0.6, t + 0.01);
        g.gain.exponentialRampToValueAtTime(0.001, t + 0.3);
        o.start(t); o.stop(t + 0.3);
      };
      const now = ctx.currentTime;
      tone(800, now); tone(600, now + 0.21);
      setTimeout(resolve, 800);
    } catch (e) { console.error("chime failed", e); resolve(); }
  });
}
(async () => {
  for (const item of items) {
    if (item.chime) { await chime(); }
    const u = new SpeechSynthesisUtterance(item.text);
    u.rate = voice.rate; u.pitch = voice.pitch; u.volume = voice.volume; u.lang = voice.lang;
    synth.cancel();
    synth.speak(u);
  }
})();
</script>
"""


class BrowserSpeaker(Speaker):
    """Queues utterances and plays them through the viewer's browser.

    `render()` must be called once per page run, after the coordinator has
    observed the current entries.
    """

    def __init__(self, settings):
        self.settings = settings
        self.pending = []

    def speak(self, text, chime=False):
        self.pending.append({"text": text, "chime": bool(chime)})

    def render(self):
        if not self.pending:
            return
        voice = {"rate": self.settings.voice_rate, "pitch": self.settings.voice_pitch,
                 "volume": self.settings.voice_volume, "lang": self.settings.voice_language}
        script = _BROWSER_SCRIPT % {"items": json.dumps(self.pending), "voice": json.dumps(voice)}
        self.pending = []
        components.html(script, height=0)


# ═══════════════════════════════════════════════════
#  COORDINATOR
# ═══════════════════════════════════════════════════
class AnnouncementCoordinator:
    """Decides when a display announces.

    State is local to one display session. Several open displays each
    announce the same call once.
    """

    def __init__(self, speaker, settings, departments=(), audio_enabled=True):
        self.speaker = speaker
        self.settings = settings
        self.departments = {d.name: d for d in departments}
        self.audio_enabled = audio_enabled
        self.user_interacted = False
        self.last_announced = {}

    def unlock(self):
        """Record the user gesture browsers require before playing audio."""
        self.user_interacted = True

    def ready(self):
        return self.audio_enabled and self.user_interacted and self.settings.announcements_on

    def message_for(self, entry):
        dept = self.departments.get(entry.department)
        template = ((dept and dept.announcement_template)
                    or self.settings.announcement_template
                    or DEFAULT_TEMPLATE)
        room = dept.counter if dept else ""
        return render_template(template, entry.token, entry.department,
                               self.settings.clinic_name, room)

    def observe(self, serving, key=None):
        """Announce `serving` if it is a new call for `key`. Returns the Announcement or None."""
        if serving is None or serving.status != CALLED:
            return None
        if self.last_announced.get(key) == serving.token or not self.ready():
            return None
        # record before playback: a second observe in the same turn sees it
        self.last_announced[key] = serving.token
        text = self.message_for(serving)
        self._play(text)
        return Announcement(serving.token, serving.department, text, key)

    def observe_boards(self, boards):
        """Per-department variant for multi-department displays."""
        made = []
        for name, board in boards.items():
            a = self.observe(board.serving, key=name)
            if a:
                made.append(a)
        return made

    def recall(self, entry):
        """Repeat the call for `entry` on staff request; not deduplicated."""
        if not self.ready():
            return None
        text = self.message_for(entry)
        self._play(text)
        return Announcement(entry.token, entry.department, text)

    def announce_transfer(self, token, from_department, to_department):
        if not self.ready():
            return None
        at = f" at {self.settings.clinic_name}" if self.settings.clinic_name else ""
        text = (TRANSFER_TEMPLATE.replace("{number}", token).replace("{from}", from_department)
                .replace("{to}", to_department).replace("{at}", at))
        self._play(text)
        return Announcement(token, to_department, text)

    def _play(self, text):
        chime = self.settings.enable_announcement_chime or not self.settings.use_native_voice
        try:
            self.speaker.speak(text, chime=chime)
        except Exception:
            log.exception("Announcement playback failed: %s", text)
