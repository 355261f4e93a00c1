#!/usr/bin/env python3
import sys
import os
import logging
from datetime import datetime, timezone
from pynput import keyboard
from pynput.keyboard import Key
from PyQt6.QtWidgets import (QApplication, QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
                             QPushButton, QCheckBox, QSlider, QLabel, QFileDialog,
                             QGroupBox, QTabWidget, QTextEdit, QSpinBox,
                             QMessageBox, QGridLayout, QStatusBar, QListWidget, QButtonGroup,
                             QRadioButton)
from PyQt6.QtCore import QObject, QTimer, pyqtSignal as Signal, Qt
from PyQt6.QtGui import QFont

from config import (APP_DIR, APP_NAME, STORE_FILENAME, TICK_INTERVAL_MS, POLL_INTERVAL_MS,
                    SESSION_TICK_MS, BARS_PER_SECTION_RANGE, TEMPO_SCALE_RANGE,
                    CLICK_NOTE_DURATION, CLICK_NOTE_VELOCITY, HAND_BOTH, HAND_LEFT, HAND_RIGHT)
from errors import BackupImportError, InputError, ParseError
from player import Player
from practice import PracticeController
from progress import ProgressTracker, SessionAccumulator, format_minutes
from storage import JsonFileStore, PracticeStorage
from synth import MidiOutSynth, NullSynth
from visualizer import PianoWidget, SectionStripWidget

logger = logging.getLogger(__name__)


class HotkeyManager(QObject):
    toggle_requested = Signal()
    bound_updated = Signal(str)

    def __init__(self):
        super().__init__()
        self.current_key = Key.f6
        self.listener = None
        self.listening_for_bind = False
        self._start_listener()

    def _start_listener(self):
        self.listener = keyboard.Listener(on_press=self.on_press)
        self.listener.start()

    def format_key(self, key=None):
        key = key or self.current_key
        if hasattr(key, 'char') and key.char:
            return key.char
        return str(key).replace('Key.', '')

    def on_press(self, key):
        if self.listening_for_bind:
            self.current_key = key
            self.listening_for_bind = False
            self.bound_updated.emit(self.format_key(key))
            return

        if key == self.current_key:
            self.toggle_requested.emit()

    def start_binding(self):
        self.listening_for_bind = True

    def stop(self):
        if self.listener: self.listener.stop()


def _create_synth(volume):
    ports = MidiOutSynth.available_ports()
    if not ports:
        logger.warning("No MIDI output ports found; playback will be silent.")
        return NullSynth()
    try:
        return MidiOutSynth(ports[0], volume=volume)
    except (OSError, IOError) as e:
        logger.warning("Could not open MIDI output %s: %s", ports[0], e)
        return NullSynth()


class MainWindow(QMainWindow):
    def __init__(self):
        super().__init__()
        self.setWindowTitle(APP_NAME)
        self.setMinimumWidth(900)

        self.storage = PracticeStorage(JsonFileStore(APP_DIR / STORE_FILENAME))
        if not self.storage.is_available():
            logger.warning("Storage at %s is not writable; progress will not be saved.", APP_DIR)
        self.prefs = self.storage.get_preferences()

        self.synth = _create_synth(self.prefs.get('volume', 75))
        self.tracker = ProgressTracker(self.storage)
        self.player = Player(self.synth, self.tracker, config=self.prefs)
        self.controller = PracticeController(self.player, self.tracker, self.storage)
        self.session = SessionAccumulator()

        self.hotkey_manager = HotkeyManager()
        self.hotkey_manager.toggle_requested.connect(self.toggle_playback_state)
        self.hotkey_manager.bound_updated.connect(self._on_hotkey_bound)

        self._setup_ui()
        self._connect_player()
        self._load_config()
        self._refresh_dashboard()

        # Drives the transport; firing times come from the transport's own clock.
        self.tick_timer = QTimer(self)
        self.tick_timer.setTimerType(Qt.TimerType.PreciseTimer)
        self.tick_timer.timeout.connect(self.player.tick)
        self.tick_timer.start(TICK_INTERVAL_MS)

        # Display only.
        self.poll_timer = QTimer(self)
        self.poll_timer.timeout.connect(self.player.poll_position)
        self.poll_timer.start(POLL_INTERVAL_MS)

        self.session_timer = QTimer(self)
        self.session_timer.timeout.connect(lambda: self.session.sample(self.player.state.is_playing))
        self.session_timer.start(SESSION_TICK_MS)

    def _setup_ui(self):
        main_widget = QWidget()
        self.setCentralWidget(main_widget)
        main_layout = QVBoxLayout(main_widget)
        main_layout.setContentsMargins(10, 10, 10, 5)

        self.tabs = QTabWidget()
        main_layout.addWidget(self.tabs)
        practice_tab, progress_tab, log_tab = QWidget(), QWidget(), QWidget()
        self.tabs.addTab(practice_tab, "Practice")
        self.tabs.addTab(progress_tab, "Progress")
        self.tabs.addTab(log_tab, "Debug")

        # --- Practice Tab ---
        practice_layout = QVBoxLayout(practice_tab)
        practice_layout.addWidget(self._create_file_group())
        practice_layout.addWidget(self._create_hand_group())
        self.section_strip = SectionStripWidget()
        self.section_strip.section_clicked.connect(self.player.select_section)
        practice_layout.addWidget(self.section_strip)
        practice_layout.addWidget(self._create_settings_group())
        practice_layout.addLayout(self._create_stats_row())
        practice_layout.addStretch()

        # --- Progress Tab ---
        progress_layout = QVBoxLayout(progress_tab)
        progress_layout.addWidget(self._create_dashboard_group())
        progress_layout.addWidget(self._create_backup_group())
        progress_layout.addStretch()

        # --- Log Tab ---
        self.log_output = QTextEdit()
        self.log_output.setReadOnly(True)
        self.log_output.setFont(QFont("Courier", 9))
        log_layout = QVBoxLayout(log_tab)
        log_layout.addWidget(self.log_output)
        clear_btn = QPushButton("Clear")
        clear_btn.clicked.connect(self.log_output.clear)
        log_layout.addWidget(clear_btn)

        self.piano_widget = PianoWidget()
        self.piano_widget.key_clicked.connect(self._on_key_clicked)
        main_layout.addWidget(self.piano_widget)

        media_layout = QHBoxLayout()
        self.time_label = QLabel("00:00 / 00:00")
        self.time_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        media_layout.addWidget(self.time_label)

        button_layout = QHBoxLayout()
        self.prev_button = QPushButton("◀ Previous")
        self.play_button = QPushButton("Play")
        self.stop_button = QPushButton("Stop")
        self.next_button = QPushButton("Next ▶")
        for btn in (self.prev_button, self.play_button, self.stop_button, self.next_button):
            button_layout.addWidget(btn)

        main_layout.addLayout(media_layout)
        main_layout.addLayout(button_layout)
        self.setStatusBar(QStatusBar())

        self.prev_button.clicked.connect(self.player.previous_section)
        self.next_button.clicked.connect(self.player.next_section)
        self.play_button.clicked.connect(self.toggle_playback_state)
        self.stop_button.clicked.connect(lambda: self.player.stop())
        self._update_controls()

    def _create_file_group(self):
        group = QGroupBox("MIDI File")
        layout = QHBoxLayout(group)
        self.file_path_label = QLabel("No file selected")
        select_btn = QPushButton("Open MIDI File...")
        select_btn.clicked.connect(self.select_file)
        layout.addWidget(self.file_path_label, 1)
        layout.addWidget(select_btn)
        return group

    def _create_hand_group(self):
        group = QGroupBox("Hand Selection")
        layout = QHBoxLayout(group)
        self.hand_buttons = QButtonGroup(self)
        for hand, label in ((HAND_BOTH, "Both Hands"), (HAND_LEFT, "Left Hand (Track 0)"), (HAND_RIGHT, "Right Hand (Track 1)")):
            radio = QRadioButton(label)
            radio.setProperty('hand', hand)
            self.hand_buttons.addButton(radio)
            layout.addWidget(radio)
        self.track_info_label = QLabel("")
        layout.addStretch()
        layout.addWidget(self.track_info_label)
        self.hand_buttons.buttonClicked.connect(lambda btn: self._on_hand_changed(btn.property('hand')))
        return group

    def _create_settings_group(self):
        group = QGroupBox("Settings")
        grid = QGridLayout(group)

        grid.addWidget(QLabel("Bars per Section"), 0, 0)
        self.bars_spinbox = QSpinBox()
        self.bars_spinbox.setRange(*BARS_PER_SECTION_RANGE)
        self.bars_spinbox.editingFinished.connect(lambda: self._on_bars_changed(self.bars_spinbox.value()))
        grid.addWidget(self.bars_spinbox, 0, 2)

        self.speed_label = QLabel("Playback Speed: 100%")
        self.speed_slider = QSlider(Qt.Orientation.Horizontal)
        lo, hi = TEMPO_SCALE_RANGE
        self.speed_slider.setRange(int(lo * 100), int(hi * 100))
        self.speed_slider.setSingleStep(5)
        self.speed_slider.valueChanged.connect(self._on_speed_changed)
        grid.addWidget(self.speed_label, 1, 0)
        grid.addWidget(self.speed_slider, 1, 2)

        self.volume_label = QLabel("Volume: 75%")
        self.volume_slider = QSlider(Qt.Orientation.Horizontal)
        self.volume_slider.setRange(0, 100)
        self.volume_slider.valueChanged.connect(self._on_volume_changed)
        grid.addWidget(self.volume_label, 2, 0)
        grid.addWidget(self.volume_slider, 2, 2)

        self.loop_check = QCheckBox("Loop Section")
        self.loop_check.toggled.connect(self._on_loop_toggled)
        grid.addWidget(self.loop_check, 3, 0, 1, 3)

        self.hk_label = QLabel(f"Play/Stop Hotkey: {self.hotkey_manager.format_key()}")
        self.hk_btn = QPushButton("Change")
        self.hk_btn.clicked.connect(self._change_hotkey)
        grid.addWidget(self.hk_label, 4, 0)
        grid.addWidget(self.hk_btn, 4, 2)
        grid.setColumnStretch(2, 1)
        return group

    def _create_stats_row(self):
        row = QHBoxLayout()
        self.current_section_label = QLabel("0 / 0")
        self.completed_label = QLabel("0")
        self.percentage_label = QLabel("0%")
        for caption, label in (("Current Section", self.current_section_label),
                               ("Sections Completed", self.completed_label),
                               ("Total Progress", self.percentage_label)):
            box = QGroupBox(caption)
            box_layout = QVBoxLayout(box)
            label.setAlignment(Qt.AlignmentFlag.AlignCenter)
            label.setFont(QFont("Arial", 16, QFont.Weight.Bold))
            box_layout.addWidget(label)
            row.addWidget(box)
        return row

    def _create_dashboard_group(self):
        group = QGroupBox("Practice Statistics")
        grid = QGridLayout(group)
        self.total_time_label = QLabel()
        self.sessions_label = QLabel()
        self.streak_label = QLabel()
        self.today_label = QLabel()
        grid.addWidget(QLabel("Total practice:"), 0, 0)
        grid.addWidget(self.total_time_label, 0, 1)
        grid.addWidget(QLabel("Sessions:"), 1, 0)
        grid.addWidget(self.sessions_label, 1, 1)
        grid.addWidget(QLabel("Current streak:"), 2, 0)
        grid.addWidget(self.streak_label, 2, 1)
        grid.addWidget(QLabel("Today:"), 3, 0)
        grid.addWidget(self.today_label, 3, 1)
        grid.addWidget(QLabel("Recent files:"), 4, 0, 1, 2)
        self.recent_list = QListWidget()
        grid.addWidget(self.recent_list, 5, 0, 1, 2)
        return group

    def _create_backup_group(self):
        group = QGroupBox("Backup")
        layout = QHBoxLayout(group)
        export_btn = QPushButton("Export Progress...")
        import_btn = QPushButton("Import Progress...")
        clear_btn = QPushButton("Clear All Data")
        export_btn.clicked.connect(self._export_data)
        import_btn.clicked.connect(self._import_data)
        clear_btn.clicked.connect(self._clear_data)
        layout.addWidget(export_btn)
        layout.addWidget(import_btn)
        layout.addStretch()
        layout.addWidget(clear_btn)
        return group

    def _connect_player(self):
        self.player.status_updated.connect(self.add_log_message)
        self.player.progress_updated.connect(self.update_progress)
        self.player.note_active.connect(self.piano_widget.set_note_active)
        self.player.playback_state_changed.connect(lambda _: self._update_controls())
        self.player.section_changed.connect(self._on_section_changed)
        self.player.section_completed.connect(lambda _index: self.session.record_section_completed())
        self.player.playback_finished.connect(lambda: self.add_log_message("Section finished."))

    # --- Methods ---
    def add_log_message(self, message): self.log_output.append(message)

    def _load_config(self):
        prefs = self.prefs
        self.controller.apply_preferences(prefs)
        self.bars_spinbox.setValue(self.controller.bars_per_section)
        self.speed_slider.setValue(int(round(self.player.state.tempo_scale * 100)))
        self.volume_slider.setValue(int(prefs.get('volume', 75)))
        self.loop_check.setChecked(self.player.state.loop_enabled)
        self._sync_hand_buttons()

    def _sync_hand_buttons(self):
        for btn in self.hand_buttons.buttons():
            btn.setChecked(btn.property('hand') == self.controller.hand_selection)

    def _save_config(self, **updates):
        self.prefs.update(updates)
        if not self.storage.save_preferences(updates):
            self.statusBar().showMessage("Could not save preferences.", 3000)

    def select_file(self):
        filepath, _ = QFileDialog.getOpenFileName(self, "Select MIDI File", "", "MIDI Files (*.mid *.midi)")
        if filepath:
            self.load_file(filepath)

    def load_file(self, filepath):
        self.add_log_message(f"Loading {filepath}...")
        try:
            sections = self.controller.load_file(filepath)
        except ParseError as e:
            QMessageBox.critical(self, "Error", f"Error parsing MIDI file:\n{e}")
            return
        except InputError as e:
            QMessageBox.warning(self, "No Notes", str(e))
            return
        except OSError as e:
            QMessageBox.critical(self, "Error", f"Could not open file:\n{e}")
            return
        self.file_path_label.setText(os.path.basename(filepath))
        self.file_path_label.setToolTip(filepath)
        song = self.controller.song
        track_summary = " | ".join(f"Track {t.index} ({t.hand_guess or 'empty'}): {t.note_count} notes" for t in song.tracks[:2])
        self.track_info_label.setText(track_summary)
        self.prefs['selectedHand'] = self.controller.hand_selection
        self._sync_hand_buttons()
        self.add_log_message(f"Loaded {song.name}: {len(song.tracks)} tracks, {song.note_count} notes, {len(sections)} sections")
        self._refresh_sections()
        self._refresh_dashboard()

    def _on_hand_changed(self, hand):
        try:
            self.controller.set_hand_selection(hand)
        except InputError as e:
            QMessageBox.warning(self, "No Notes", str(e))
            self._sync_hand_buttons()
            return
        self.prefs['selectedHand'] = hand
        self._refresh_sections()

    def _on_bars_changed(self, bars):
        if bars == self.controller.bars_per_section: return
        try:
            self.controller.set_bars_per_section(bars)
        except InputError as e:
            QMessageBox.warning(self, "No Notes", str(e))
            self.bars_spinbox.setValue(self.controller.bars_per_section)
            return
        self.prefs['barsPerSection'] = bars
        self._refresh_sections()

    def _on_speed_changed(self, value):
        self.speed_label.setText(f"Playback Speed: {value}%")
        self.player.set_tempo_scale(value / 100.0)
        self._save_config(playbackRate=value / 100.0)

    def _on_volume_changed(self, value):
        self.volume_label.setText(f"Volume: {value}%")
        self.synth.set_volume(value)
        self._save_config(volume=value)

    def _on_loop_toggled(self, checked):
        self.player.set_loop(checked)
        self._save_config(isLooping=checked)

    def _on_key_clicked(self, pitch_name):
        self.synth.trigger_attack_release(pitch_name, CLICK_NOTE_DURATION, None, CLICK_NOTE_VELOCITY)
        self.session.record_note()

    def _change_hotkey(self):
        self.hk_btn.setText("Listening...")
        self.hk_btn.setEnabled(False)
        self.hotkey_manager.start_binding()

    def _on_hotkey_bound(self, key_str):
        self.hk_label.setText(f"Play/Stop Hotkey: {key_str}")
        self.hk_btn.setText("Change")
        self.hk_btn.setEnabled(True)
        self._update_controls()

    def toggle_playback_state(self):
        if not self.player.sections: return
        self.player.toggle()

    def _update_controls(self):
        key_str = self.hotkey_manager.format_key()
        has_sections = bool(self.player.sections)
        idx = self.player.state.current_section_index
        self.play_button.setText(f"{'Stop' if self.player.state.is_playing else 'Play'} ({key_str})")
        self.play_button.setEnabled(has_sections)
        self.stop_button.setEnabled(self.player.state.is_playing)
        self.prev_button.setEnabled(has_sections and idx > 0)
        self.next_button.setEnabled(has_sections and idx < len(self.player.sections) - 1)

    def _on_section_changed(self, index):
        self.piano_widget.clear()
        self.section_strip.set_current(index)
        self.section_strip.set_completed(self.tracker.completed_in_range())
        self._update_stats()
        self._update_controls()

    def _refresh_sections(self):
        self.section_strip.set_sections(self.player.sections, self.tracker.completed_in_range(), self.player.state.current_section_index)
        self._update_stats()
        self._update_controls()

    def _update_stats(self):
        stats = self.tracker.derived_stats()
        total = len(self.player.sections)
        current = self.player.state.current_section_index + 1 if total else 0
        self.current_section_label.setText(f"{current} / {total}")
        self.completed_label.setText(str(stats.completed_count))
        self.percentage_label.setText(f"{stats.completion_percentage}%")

    def update_progress(self, current_time):
        section = self.player.current_section
        total = section.length if section else 0.0
        self.section_strip.set_position(current_time)
        self._update_time_label(current_time, total)

    def _update_time_label(self, current, total):
        def fmt(s):
            m = int(s // 60); sec = int(s % 60)
            return f"{m:02d}:{sec:02d}"
        self.time_label.setText(f"{fmt(current)} / {fmt(total)}")

    def _refresh_dashboard(self):
        stats = self.tracker.practice_stats()
        total = stats['total']
        self.total_time_label.setText(format_minutes(total.get('minutesPracticed', 0)))
        self.sessions_label.setText(str(total.get('sessionsCompleted', 0)))
        streak = self.tracker.practice_streak()
        self.streak_label.setText(f"{streak} day{'s' if streak != 1 else ''}")
        today = stats['daily'].get(datetime.now(timezone.utc).date().isoformat(), {})
        self.today_label.setText(format_minutes(today.get('minutesPracticed', 0)))

        recent = self.storage.get_recent_files()
        self.recent_list.clear()
        for info in recent:
            self.recent_list.addItem(info.get('name', '?'))

    def _export_data(self):
        path, _ = QFileDialog.getSaveFileName(self, "Export Progress", "piano-practice-backup.json", "JSON (*.json)")
        if not path: return
        try:
            with open(path, 'w', encoding='utf-8') as f: f.write(self.storage.export_json())
        except OSError as e:
            QMessageBox.critical(self, "Export Failed", str(e))
            return
        self.statusBar().showMessage(f"Exported to {path}", 3000)

    def _import_data(self):
        path, _ = QFileDialog.getOpenFileName(self, "Import Progress", "", "JSON (*.json)")
        if not path: return
        try:
            with open(path, 'r', encoding='utf-8') as f: text = f.read()
            imported = self.storage.import_json(text)
        except (OSError, BackupImportError) as e:
            QMessageBox.warning(self, "Import Failed", f"Nothing was imported:\n{e}")
            return
        QMessageBox.information(self, "Import Complete",
                                f"Imported: {', '.join(imported)}.\nRestart the application for the changes to take effect.")

    def _clear_data(self):
        answer = QMessageBox.question(self, "Clear All Data", "Delete all saved preferences, progress and statistics?")
        if answer != QMessageBox.StandardButton.Yes: return
        self.storage.clear_all()
        self._refresh_dashboard()

    def closeEvent(self, event):
        self.player.stop()
        self.session.flush(self.tracker)
        self.hotkey_manager.stop()
        self.synth.close()
        event.accept()


def main():
    logging.basicConfig(level=logging.INFO)
    app = QApplication(sys.argv)
    window = MainWindow()
    window.show()
    if len(sys.argv) > 1:
        window.load_file(sys.argv[1])
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
