import pytest

from announcer import DEFAULT_TEMPLATE, AnnouncementCoordinator, render_template
from config import SystemSettings
from models import CALLED, SERVED, WAITING, QueueEntry
from views import currently_serving, department_boards

from conftest import RecordingSpeaker, at

VOICE_ON = SystemSettings(enable_voice_announcements=True, clinic_name="St. Mary's")


def called(token, department="Consultation", minutes=0, status=CALLED):
    return QueueEntry(id=token, token=token, full_name=token, department=department,
                      status=status, timestamp=at(0), called_at=at(minutes))


@pytest.fixture
def speaker():
    return RecordingSpeaker()


@pytest.fixture
def coordinator(speaker, departments):
    c = AnnouncementCoordinator(speaker, VOICE_ON, departments)
    c.unlock()
    return c


def test_repeated_observation_announces_once(coordinator, speaker):
    entries = [called("C-001")]
    for _ in range(10):
        coordinator.observe(currently_serving(entries))
    assert len(speaker.spoken) == 1


def test_each_new_call_is_announced(coordinator, speaker):
    one, two = called("C-001", minutes=1), called("C-002", minutes=2)
    coordinator.observe(one)
    coordinator.observe(two)
    coordinator.observe(two)
    coordinator.observe(one)
    assert len(speaker.spoken) == 3


def test_only_called_entries_are_announced(coordinator, speaker):
    assert coordinator.observe(called("C-001", status=SERVED)) is None
    assert coordinator.observe(called("C-002", status=WAITING)) is None
    assert coordinator.observe(None) is None
    assert speaker.spoken == []


@pytest.mark.parametrize("settings, audio, unlocked", [
    (SystemSettings(), True, True),
    (SystemSettings(enable_voice_announcements=True, enable_announcements=False), True, True),
    (VOICE_ON, False, True),
    (VOICE_ON, True, False),
])
def test_nothing_plays_until_every_precondition_holds(settings, audio, unlocked, speaker):
    c = AnnouncementCoordinator(speaker, settings, audio_enabled=audio)
    if unlocked:
        c.unlock()
    assert c.observe(called("C-001")) is None
    assert speaker.spoken == []


def test_call_seen_while_locked_is_announced_after_unlock(speaker):
    c = AnnouncementCoordinator(speaker, VOICE_ON)
    c.observe(called("C-001"))
    c.unlock()
    c.observe(called("C-001"))
    assert len(speaker.spoken) == 1


def test_default_message_uses_room_and_clinic(coordinator, speaker):
    coordinator.observe(called("C-007"))
    assert speaker.spoken == ["Token C-007, please proceed to Room 2, Consultation at St. Mary's"]


def test_department_template_wins(coordinator, speaker):
    coordinator.observe(called("LAB-003", department="Lab"))
    assert speaker.spoken == ["Token LAB-003 to the Lab counter"]


def test_settings_template_used_when_department_has_none(speaker, departments):
    settings = SystemSettings(enable_voice_announcements=True, announcement_template="{prefix} desk: {number}")
    c = AnnouncementCoordinator(speaker, settings, departments)
    c.unlock()
    c.observe(called("P-010", department="Pharmacy"))
    assert speaker.spoken == ["P desk: P-010"]


def test_render_template_leaves_unknown_placeholders():
    text = render_template("Token {number} {floor} {department}", "C-001", "Consultation")
    assert text == "Token C-001 {floor} Consultation"
    assert "{" not in render_template(DEFAULT_TEMPLATE, "C-001", "Consultation", "H", "Room 1")


def test_boards_track_each_department(coordinator, speaker):
    entries = [called("C-001"), called("LAB-001", department="Lab"),
               QueueEntry(id="w", token="P-001", full_name="w", department="Pharmacy", timestamp=at(0))]
    boards = department_boards(entries, ["Consultation", "Lab", "Pharmacy"])
    assert len(coordinator.observe_boards(boards)) == 2
    assert coordinator.observe_boards(boards) == []
    assert len(speaker.spoken) == 2


def test_playback_failure_does_not_escape(departments):
    class Broken:
        def speak(self, text, chime=False):
            raise RuntimeError("no audio device")

    c = AnnouncementCoordinator(Broken(), VOICE_ON, departments)
    c.unlock()
    assert c.observe(called("C-001")) is not None
    assert c.observe(called("C-001")) is None


def test_recall_repeats_and_transfer_is_announced(coordinator, speaker):
    e = called("C-001")
    coordinator.observe(e)
    coordinator.recall(e)
    coordinator.announce_transfer("C-001", "Consultation", "Pharmacy")
    assert len(speaker.spoken) == 3
    assert speaker.spoken[-1] == "Token C-001, please move from Consultation to Pharmacy at St. Mary's"
