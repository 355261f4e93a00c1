"""Piano keyboard highlight (active notes, clickable keys) and section strip (completion, current section, playhead)."""

from PyQt6.QtWidgets import QWidget, QSizePolicy
from PyQt6.QtCore import Qt, QRectF, QPointF, pyqtSignal as Signal
from PyQt6.QtGui import QPainter, QBrush, QColor, QPen
from typing import Dict, List, Optional, Set
from models import Section, midi_note_name, note_name_to_midi


class PianoWidget(QWidget):
    """Draws an A0–C8 keyboard (21–108, 52 white keys); highlights active notes and emits clicked key names."""
    key_clicked = Signal(str)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.setFixedHeight(90)
        self.setMinimumWidth(500)
        self.setSizePolicy(QSizePolicy.Policy.Expanding, QSizePolicy.Policy.Fixed)
        self.active_pitches: Set[int] = set()
        self.min_pitch = 21   # A0
        self.max_pitch = 108  # C8
        self.white_keys_count = 52
        self.black_keys = {1, 3, 6, 8, 10}   # Semitones that are black keys (mod 12)

    def set_note_active(self, pitch_name: str, active: bool):
        pitch = note_name_to_midi(pitch_name)
        if active: self.active_pitches.add(pitch)
        else: self.active_pitches.discard(pitch)
        self.update()

    def clear(self):
        self.active_pitches.clear()
        self.update()

    def _key_rects(self) -> Dict[int, QRectF]:
        key_width = self.width() / self.white_keys_count
        black_key_width = key_width * 0.65
        black_key_height = self.height() * 0.6
        rects = {}
        white_idx = 0
        for p in range(self.min_pitch, self.max_pitch + 1):
            if (p % 12) in self.black_keys: continue
            rects[p] = QRectF(white_idx * key_width, 0, key_width, self.height())
            white_idx += 1
        for p in range(self.min_pitch, self.max_pitch + 1):
            if (p % 12) not in self.black_keys or (p - 1) not in rects: continue
            x = rects[p - 1].right() - (black_key_width / 2)
            rects[p] = QRectF(x, 0, black_key_width, black_key_height)
        return rects

    def pitch_at(self, x: float, y: float) -> Optional[int]:
        rects = self._key_rects()
        point = QPointF(x, y)
        # Black keys sit on top of white keys.
        for p, rect in rects.items():
            if (p % 12) in self.black_keys and rect.contains(point): return p
        for p, rect in rects.items():
            if (p % 12) not in self.black_keys and rect.contains(point): return p
        return None

    def mousePressEvent(self, event):
        if event.button() != Qt.MouseButton.LeftButton: return
        pitch = self.pitch_at(event.position().x(), event.position().y())
        if pitch is not None:
            self.key_clicked.emit(midi_note_name(pitch))

    def paintEvent(self, event):
        """Draw white keys first, then black keys on top."""
        painter = QPainter(self)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing)

        white_brush = QBrush(QColor(255, 255, 255))
        black_brush = QBrush(QColor(0, 0, 0))
        active_white = QBrush(QColor(96, 165, 250))
        active_black = QBrush(QColor(37, 99, 235))
        rects = self._key_rects()

        painter.setPen(QPen(QColor(0, 0, 0), 1))
        for p, rect in rects.items():
            if (p % 12) in self.black_keys: continue
            painter.setBrush(active_white if p in self.active_pitches else white_brush)
            painter.drawRect(rect)
            if p % 12 == 0:
                painter.drawText(rect.adjusted(0, 0, 0, -3), Qt.AlignmentFlag.AlignHCenter | Qt.AlignmentFlag.AlignBottom,
                                 midi_note_name(p))

        for p, rect in rects.items():
            if (p % 12) not in self.black_keys: continue
            painter.setBrush(active_black if p in self.active_pitches else black_brush)
            painter.drawRect(rect)


class SectionStripWidget(QWidget):
    """Horizontal strip of practice sections: completed=green, current=outlined, playhead inside the current one. Click to select."""
    section_clicked = Signal(int)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.setFixedHeight(48)
        self.setSizePolicy(QSizePolicy.Policy.Expanding, QSizePolicy.Policy.Fixed)
        self.sections: List[Section] = []
        self.completed: Set[int] = set()
        self.current_index = 0
        self.current_time = 0.0

        self.bg_color = QColor(30, 30, 30)
        self.section_color = QColor(90, 90, 90)
        self.completed_color = QColor(34, 197, 94)
        self.current_color = QColor(255, 255, 255)
        self.cursor_color = QColor(250, 204, 21)

    def set_sections(self, sections: List[Section], completed=(), current_index: int = 0):
        self.sections = list(sections)
        self.completed = set(completed)
        self.current_index = current_index
        self.current_time = 0.0
        self.update()

    def set_completed(self, completed):
        self.completed = set(completed)
        self.update()

    def set_current(self, index: int):
        self.current_index = index
        self.current_time = 0.0
        self.update()

    def set_position(self, time: float):
        self.current_time = time
        self.update()

    def _total(self) -> float:
        return self.sections[-1].end_time if self.sections else 0.0

    def index_at(self, x: float) -> Optional[int]:
        total = self._total()
        if total <= 0 or self.width() <= 0: return None
        t = max(0.0, min(x / self.width(), 1.0)) * total
        for sec in self.sections:
            if sec.start_time <= t < sec.end_time: return sec.index
        return self.sections[-1].index

    def mousePressEvent(self, event):
        if event.button() != Qt.MouseButton.LeftButton: return
        idx = self.index_at(event.position().x())
        if idx is not None: self.section_clicked.emit(idx)

    def paintEvent(self, event):
        painter = QPainter(self)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing)
        painter.fillRect(self.rect(), self.bg_color)

        total = self._total()
        if total <= 0: return
        w = self.width()
        h = self.height()

        for sec in self.sections:
            x = (sec.start_time / total) * w
            sw = max(1.0, (sec.length / total) * w)
            rect = QRectF(x + 1, 4, sw - 2, h - 8)
            painter.setBrush(QBrush(self.completed_color if sec.index in self.completed else self.section_color))
            painter.setPen(QPen(self.current_color, 2) if sec.index == self.current_index else Qt.PenStyle.NoPen)
            painter.drawRect(rect)
            painter.setPen(QPen(self.current_color, 1))
            painter.drawText(rect, Qt.AlignmentFlag.AlignCenter, str(sec.index + 1))

        if 0 <= self.current_index < len(self.sections):
            sec = self.sections[self.current_index]
            cx = ((sec.start_time + min(self.current_time, sec.length)) / total) * w
            painter.setPen(QPen(self.cursor_color, 2))
            painter.drawLine(QPointF(cx, 0), QPointF(cx, h))
