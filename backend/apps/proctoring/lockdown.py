# apps/proctoring/lockdown.py

from __future__ import annotations

from typing import Callable, Optional, Protocol

from apps.common.exceptions import ValidationError
from apps.common.infra.logger import get_logger, logger_extra

from . import events
from .schemas import ContestSettings, LockdownState

logger = get_logger(__name__)

# 全屏模式下拦截的快捷键：刷新、开发者工具、查看源码、前进后退、关闭/新建标签页
BLOCKED_SHORTCUTS = (
    "F5",
    "Ctrl+R",
    "Meta+R",
    "Ctrl+Shift+R",
    "F12",
    "Ctrl+Shift+I",
    "Ctrl+Shift+J",
    "Ctrl+Shift+C",
    "Meta+Alt+I",
    "Meta+Alt+J",
    "Ctrl+U",
    "Meta+U",
    "Alt+ArrowLeft",
    "Alt+ArrowRight",
    "Ctrl+W",
    "Ctrl+T",
    "Ctrl+N",
)

# navigator.keyboard.lock 锁定的按键（仅全屏下生效）
KEYBOARD_LOCK_KEYS = ("Escape", "F11", "MetaLeft", "MetaRight", "AltLeft", "Tab")


class Display(Protocol):
    async def request_fullscreen(self) -> bool: ...

    def install_guards(self, *, blocked_shortcuts: tuple, report_visibility: bool, report_clipboard: bool) -> None: ...

    def remove_guards(self) -> None: ...

    def lock_keyboard(self, keys: tuple) -> None: ...

    def unlock_keyboard(self) -> None: ...


class LockdownMonitor:
    """
    全屏锁定状态机：{Active, Locked}

    - 比赛未开启全屏模式时完全不工作，不会发生任何状态迁移
    - 退出全屏 -> Locked：记录一次 exit_fullscreen，violation_count + 1
    - 重新进入全屏 -> Active；violation_count 整个会话内只增不减
    - locked 为 True 时 fullscreen_active 一定为 False
    - 快捷键拦截、切屏上报只在全屏模式下启用；剪贴板监控跟随 allowCopyPaste
    - 以 Locked 状态恢复的会话不会自动请求全屏，只能经 remediate 解锁
    """

    def __init__(
            self,
            display: Display,
            settings: ContestSettings,
            *,
            emit_activity: Callable[[str, dict], None],
            on_change: Optional[Callable[[], None]] = None,
            violation_count: int = 0,
            locked: bool = False,
    ):
        self.display = display
        self.settings = settings
        self._emit_activity = emit_activity
        self._on_change = on_change
        # 续连时恢复锁定：未开启全屏模式的比赛不存在锁定状态
        self.state = LockdownState(violation_count=violation_count, locked=locked and self.enforced)
        self._guards_installed = False
        self._keyboard_locked = False
        self._torn_down = False

    @property
    def enforced(self) -> bool:
        return self.settings.full_screen_mode_enabled

    @property
    def is_locked(self) -> bool:
        return self.state.locked

    def snapshot(self) -> dict:
        return {"enforced": self.enforced, **self.state.to_dict()}

    # ------------------------
    # 进入 Active 时启用
    # ------------------------

    async def activate(self) -> bool:
        """
        安装监听并尝试进入全屏；进入失败只上报，不影响会话（选手可手动重试）
        返回是否处于全屏
        """
        report_clipboard = not self.settings.allow_copy_paste
        if (self.enforced or report_clipboard) and not self._guards_installed:
            self.display.install_guards(
                blocked_shortcuts=BLOCKED_SHORTCUTS if self.enforced else (),
                report_visibility=self.enforced,
                report_clipboard=report_clipboard,
            )
            self._guards_installed = True
        if not self.enforced:
            return False
        if self.state.locked:
            logger.info(
                "会话以锁定状态恢复，等待选手重新进入全屏",
                extra=logger_extra({"violation_count": self.state.violation_count}),
            )
            return False
        return await self._enter_fullscreen()

    async def remediate(self) -> bool:
        """唯一允许在 Locked 状态下执行的操作：重新进入全屏"""
        if not self.enforced:
            return True
        return await self._enter_fullscreen()

    async def _enter_fullscreen(self) -> bool:
        try:
            ok = await self.display.request_fullscreen()
        except Exception as exc:
            logger.warning("进入全屏失败", extra=logger_extra({"error": str(exc)}))
            ok = False
        if not ok:
            logger.info("浏览器拒绝进入全屏", extra=logger_extra({"locked": self.state.locked}))
            self._emit_activity(events.FULLSCREEN_REFUSED, {"locked": self.state.locked})
            return False
        self._set_fullscreen()
        return True

    # ------------------------
    # 平台通知
    # ------------------------

    def fullscreen_change(self, active: bool) -> None:
        if not self.enforced or self._torn_down:
            return
        if active:
            self._set_fullscreen()
            return
        if not self.state.fullscreen_active:
            # 未处于全屏时的重复通知
            return
        self.state.fullscreen_active = False
        self._keyboard_locked = False
        if not self.state.locked:
            self.state.locked = True
            self.state.violation_count += 1
            logger.warning("选手退出全屏，会话已锁定", extra=logger_extra({"violation_count": self.state.violation_count}))
            self._emit_activity(events.EXIT_FULLSCREEN, {"violationCount": self.state.violation_count})
        self._changed()

    def visibility_change(self, hidden: bool) -> None:
        """切屏上报：与锁定状态无关，仅作记录"""
        if not self.enforced or self._torn_down:
            return
        self._emit_activity(events.TAB_SWITCH if hidden else events.TAB_FOCUS, {"hidden": hidden})

    def clipboard_attempt(self, action: str) -> Optional[str]:
        """返回记录的事件类型；允许复制粘贴时返回 None"""
        activity = events.CLIPBOARD_ACTIVITY.get(action)
        if activity is None:
            raise ValidationError(message="未知的剪贴板操作", extra={"action": action})
        if self.settings.allow_copy_paste or self._torn_down:
            return None
        self._emit_activity(activity, {"action": action})
        return activity

    def _set_fullscreen(self) -> None:
        was_locked = self.state.locked
        self.state.fullscreen_active = True
        self.state.locked = False
        if not self._keyboard_locked:
            self.display.lock_keyboard(KEYBOARD_LOCK_KEYS)
            self._keyboard_locked = True
        if was_locked:
            logger.info("选手重新进入全屏，会话已解锁")
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # ------------------------
    # 销毁
    # ------------------------

    def teardown(self) -> None:
        """移除全部监听并释放键盘锁"""
        if self._torn_down:
            return
        self._torn_down = True
        if self._guards_installed:
            self.display.remove_guards()
            self._guards_installed = False
        if self._keyboard_locked or self.enforced:
            self.display.unlock_keyboard()
            self._keyboard_locked = False
