# -*- coding: utf-8 -*-
"""
监考会话协议规范（供前后端对齐）：
- 选手端浏览器 ↔ 会话协调器：RPC 帧、平台通知帧、用户操作帧、状态推送帧
- 监考端浏览器 ↔ 监考 Consumer：信令帧
- 两个 Consumer 之间：channel layer 消息类型
- 行为事件类型与严重级别
如需新增事件，请在此处补充，避免魔法字符串
"""

from __future__ import annotations

# ======================
# 行为事件（ActivityEvent.type）
# ======================

TAB_SWITCH = "tab_switch"
TAB_FOCUS = "tab_focus"
EXIT_FULLSCREEN = "exit_fullscreen"
FULLSCREEN_REFUSED = "fullscreen_refused"
TASK_SUBMITTED = "task_submitted"
COPY_ATTEMPT = "copy_attempt"
CUT_ATTEMPT = "cut_attempt"
PASTE_ATTEMPT = "paste_attempt"
SCREEN_SHARE_STOPPED = "screen_share_stopped"
CONTEST_JOINED = "contest_joined"
CONTEST_COMPLETED = "contest_completed"

CLIPBOARD_ACTIVITY = {
    "copy": COPY_ATTEMPT,
    "cut": CUT_ATTEMPT,
    "paste": PASTE_ATTEMPT,
}

# 与比赛后端的严重级别划分保持一致
ALERT_ACTIVITIES = frozenset({EXIT_FULLSCREEN, TAB_SWITCH, "screen_shift"})
WARNING_ACTIVITIES = frozenset({
    COPY_ATTEMPT,
    PASTE_ATTEMPT,
    CUT_ATTEMPT,
    TASK_SUBMITTED,
    TAB_FOCUS,
    FULLSCREEN_REFUSED,
    "monitor_audio_muted",
})

# 比赛关闭行为日志时仍然上报的类型
CRITICAL_ACTIVITIES = frozenset({
    TASK_SUBMITTED,
    CONTEST_JOINED,
    CONTEST_COMPLETED,
    "screen_shift",
    COPY_ATTEMPT,
})


def severity_for(activity_type: str) -> str:
    """根据事件类型推导严重级别：alert / warning / normal"""
    if activity_type in ALERT_ACTIVITIES:
        return "alert"
    if activity_type in WARNING_ACTIVITIES:
        return "warning"
    return "normal"


# ======================
# 信令事件（与 socket 信令通道命名保持一致）
# ======================

JOIN_CONTEST = "join-contest"
LEAVE_CONTEST = "leave-contest"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
ACTIVITY = "activity"
MEDIA_UPDATED = "media-updated"
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
MONITOR_JOINED = "monitor-joined"
MONITOR_LEFT = "monitor-left"

# ======================
# channel layer 消息类型（Channels 以 "." 分隔，对应 Consumer 上的 signal_xxx 方法）
# ======================

LAYER_OFFER = "signal.offer"
LAYER_ANSWER = "signal.answer"
LAYER_ICE_CANDIDATE = "signal.ice_candidate"
LAYER_PARTICIPANT_JOINED = "signal.participant_joined"
LAYER_PARTICIPANT_LEFT = "signal.participant_left"
LAYER_MONITOR_JOINED = "signal.monitor_joined"
LAYER_MONITOR_LEFT = "signal.monitor_left"
LAYER_ACTIVITY = "signal.activity"
LAYER_MEDIA_UPDATED = "signal.media_updated"


def monitor_group(contest_id: int) -> str:
    """监考端分组：接收选手上线/下线、应答、行为事件"""
    return f"proctoring_monitors_{contest_id}"


def participant_group(contest_id: int) -> str:
    """选手端分组：接收监考端上线/下线广播"""
    return f"proctoring_participants_{contest_id}"


# ======================
# 选手端浏览器 → 协调器
# ======================

FRAME_RPC_RESULT = "rpc_result"
FRAME_MEDIA_ENDED = "media_ended"
FRAME_PEER_ICE = "peer_ice"
FRAME_FULLSCREEN_CHANGE = "fullscreen_change"
FRAME_VISIBILITY_CHANGE = "visibility_change"
FRAME_CLIPBOARD = "clipboard"
FRAME_EDITOR_INPUT = "editor_input"
FRAME_REQUEST_MEDIA = "request_media"
FRAME_ENTER_FULLSCREEN = "enter_fullscreen"
FRAME_SWITCH_TASK = "switch_task"
FRAME_SELECT_LANGUAGE = "select_language"
FRAME_RUN_CODE = "run_code"
FRAME_SUBMIT_CODE = "submit_code"
FRAME_FINISH = "finish"
FRAME_ABORT = "abort"

# ======================
# 协调器 → 选手端浏览器
# ======================

EVENT_RPC = "rpc"
EVENT_COMMAND = "command"
EVENT_SESSION_STATE = "session_state"
EVENT_EDITOR_LOAD = "editor_load"
EVENT_SHIFT_DENIED = "shift_denied"
EVENT_MEDIA_DENIED = "media_denied"
EVENT_TEST_RESULTS = "test_results"
EVENT_SESSION_SUMMARY = "session_summary"
EVENT_ERROR = "error"

EVENT_SCHEMAS: list[dict] = [
    {
        "event": EVENT_RPC,
        "required": ["id", "method", "params"],
        "optional": [],
        "desc": "请求浏览器执行平台调用，浏览器以 rpc_result 帧（同 id）回复",
    },
    {
        "event": EVENT_COMMAND,
        "required": ["method", "params"],
        "optional": [],
        "desc": "无需回复的平台指令（关闭连接、释放键盘锁等）",
    },
    {
        "event": EVENT_SESSION_STATE,
        "required": ["session"],
        "optional": [],
        "desc": "会话状态快照：状态、计时、当前题目、媒体授权、锁定状态",
    },
    {
        "event": EVENT_EDITOR_LOAD,
        "required": ["task_id", "code", "language"],
        "optional": ["source"],
        "desc": "切题/续连后编辑器应加载的代码，source 为 submitted/draft/boilerplate",
    },
    {
        "event": EVENT_SHIFT_DENIED,
        "required": ["reason", "target_index", "overridable"],
        "optional": [],
        "desc": "切题被拒绝；overridable 为 true 时前端可弹窗确认后携带 override 重试",
    },
    {
        "event": EVENT_MEDIA_DENIED,
        "required": ["kind", "reason"],
        "optional": [],
        "desc": "媒体授权失败，前端重新展示授权按钮",
    },
    {
        "event": EVENT_TEST_RESULTS,
        "required": ["mode", "task_id", "results"],
        "optional": [],
        "desc": "运行 / 提交的评测结果，mode 为 run/submit",
    },
    {
        "event": EVENT_SESSION_SUMMARY,
        "required": ["status", "reason", "completed_task_ids", "submitted_task_ids"],
        "optional": ["auto_submitted"],
        "desc": "会话结束汇总（主动结束、超时、放弃）",
    },
    {
        "event": EVENT_ERROR,
        "required": ["code", "message"],
        "optional": ["operation", "extra"],
        "desc": "单个操作失败，不影响会话继续",
    },
]

# ======================
# 平台 RPC 方法
# ======================

RPC_GET_USER_MEDIA = "media.get_user_media"
RPC_GET_DISPLAY_MEDIA = "media.get_display_media"
CMD_STOP_STREAM = "media.stop"
RPC_REQUEST_FULLSCREEN = "display.request_fullscreen"
CMD_INSTALL_GUARDS = "display.install_guards"
CMD_REMOVE_GUARDS = "display.remove_guards"
CMD_LOCK_KEYBOARD = "keyboard.lock"
CMD_UNLOCK_KEYBOARD = "keyboard.unlock"
RPC_PEER_CREATE = "peer.create"
RPC_PEER_ADD_TRACK = "peer.add_track"
RPC_PEER_SET_REMOTE = "peer.set_remote_description"
RPC_PEER_CREATE_ANSWER = "peer.create_answer"
RPC_PEER_SET_LOCAL = "peer.set_local_description"
RPC_PEER_ADD_ICE = "peer.add_ice_candidate"
CMD_PEER_CLOSE = "peer.close"
