"""
业务异常体系（BizError）

约定与作用：
- 所有“预期内的业务错误”都继承 BizError，避免直接抛框架异常
- 统一错误码/HTTP 状态/提示语，便于前后端对齐
- 系统级错误（代码 bug、第三方故障等）由全局异常处理器按 500 处理

错误码规范：
- 0                : 成功（只出现在正常响应里）
- 40000~40099      : 通用请求 / 参数错误（Validation、BadRequest）
- 40100~40199      : 认证错误（未登录、Token 无效等）
- 40300~40399      : 权限错误（无权限访问某资源/操作）
- 40400~40499      : 资源不存在（比赛、会话等）
- 40900~40999      : 资源冲突 / 状态不允许
- 42900~42999      : 频率限制（节流 / 风控）
- 49000~49099      : 监考会话相关错误（媒体授权、信令、会话状态、外部比赛服务）
- 50300~50399      : 基础设施/第三方依赖不可用（缓存等）

使用方式：
- 业务层抛 BizError 或子类；REST 由全局异常处理器构造统一响应，
  WebSocket 由会话协调器转换为 error 帧推送给前端
"""


class BizError(Exception):
    """
    所有业务异常的基类

    设计要点：
    - 不耦合 DRF / Response，只是纯数据和语义；
    - 子类只需覆盖 default_code / default_message / http_status；
    - 也可以在 __init__ 时传入自定义 message / code / extra 做覆盖
    """

    #: 子类可覆盖的默认错误码
    default_code: int = 40000

    #: 子类可覆盖的默认提示信息
    default_message: str = "业务错误"

    #: 子类可覆盖的建议 HTTP 状态码（交给异常处理器用）
    http_status: int = 400

    def __init__(self, message: str | None = None, code: int | None = None, *, extra: dict | None = None):
        self.code = code if code is not None else self.default_code
        self.message = message if message is not None else self.default_message
        self.extra = extra or {}
        super().__init__(self.message)

    def __str__(self) -> str:  # 方便日志输出
        return f"[{self.code}] {self.message}"


# ======================
# 通用类错误
# ======================

class BadRequestError(BizError):
    """
    通用的 400 错误：
    - 无法解析的请求 / 帧
    - 请求格式错误/缺少头信息等
    """
    default_code = 40001
    default_message = "错误的请求"
    http_status = 400


class ValidationError(BizError):
    """
    参数校验 / 请求数据不合法：
    - 缺少必要字段
    - 字段格式错误、下标越界
    """
    default_code = 40002
    default_message = "请求参数不合法"
    http_status = 400


class NotFoundError(BizError):
    """
    通用资源不存在：
    - 比赛/题目不存在
    - 当前进程中没有对应的监考会话
    """
    default_code = 40400
    default_message = "资源不存在"
    http_status = 404


class ConflictError(BizError):
    """
    资源冲突：
    - 当前状态下不允许重复操作
    """
    default_code = 40900
    default_message = "资源冲突"
    http_status = 409


class RateLimitError(BizError):
    """
    触发频率限制 / 风控：
    - 连接数超限
    - 提交太频繁
    """
    default_code = 42900
    default_message = "请求过于频繁，请稍后再试"
    http_status = 429


# ======================
# 认证 / 授权相关
# ======================

class AuthError(BizError):
    """
    认证相关错误（登录、Token 等）：
    - 统一归类为 401xx
    """
    default_code = 40100
    default_message = "认证失败"
    http_status = 401


class TokenError(AuthError):
    """
    Token 无效 / 过期 / 被吊销
    """
    default_code = 40102
    default_message = "登录状态已失效，请重新登录"


class PermissionDeniedError(BizError):
    """
    权限不足：
    - 普通选手访问监考端
    - 访问他人的监考会话
    """
    default_code = 40300
    default_message = "无权限进行该操作"
    http_status = 403


# ======================
# 监考会话领域错误
# ======================

class ProctoringError(BizError):
    """监考会话相关通用错误基类"""
    default_code = 49000
    default_message = "监考会话相关错误"
    http_status = 400


class MediaPermissionError(ProctoringError):
    """
    媒体授权失败（摄像头/麦克风/屏幕共享）：
    - 用户拒绝授权、设备不存在、系统层面禁止
    - 本地可恢复：前端重新展示授权按钮，会话停留在 AwaitingMedia
    """
    default_code = 49001
    default_message = "媒体设备授权失败，请重新授权"

    def __init__(self, kind: str, reason: str = "", message: str | None = None):
        self.kind = kind
        self.reason = reason
        super().__init__(message, extra={"kind": kind, "reason": reason})


class SignalingError(ProctoringError):
    """
    信令错误（发送失败、offer 格式错误等）：
    - 丢弃当前操作即可，由监考端负责重试，不阻断选手答题
    """
    default_code = 49002
    default_message = "信令处理失败，已忽略"


class SessionStateError(ProctoringError):
    """当前会话状态不允许该操作（未激活、已锁定、已结束）"""
    default_code = 49003
    default_message = "当前会话状态不允许该操作"
    http_status = 409


class SessionExpiredError(SessionStateError):
    """比赛时间已耗尽，会话已结束"""
    default_code = 49004
    default_message = "比赛时间已结束"


class SettingsFetchFailedError(ProctoringError):
    """拉取比赛设置失败：会话使用宽松的兜底设置继续运行"""
    default_code = 49010
    default_message = "比赛设置获取失败"
    http_status = 502


class ContestUnavailableError(ProctoringError):
    """拉取比赛题目/时长失败，无法开始答题"""
    default_code = 49011
    default_message = "比赛信息获取失败，请稍后重试"
    http_status = 502


class SubmissionFailedError(ProctoringError):
    """评测服务调用失败或返回结构异常"""
    default_code = 49012
    default_message = "代码评测失败，请稍后重试"
    http_status = 502


class SubmissionLimitError(ProctoringError):
    """超过比赛允许的提交次数"""
    default_code = 49013
    default_message = "已达到该题最大提交次数"
    http_status = 409


class ActivityDeliveryError(ProctoringError):
    """行为日志上报失败（仅记录日志，不影响答题）"""
    default_code = 49014
    default_message = "行为日志上报失败"
    http_status = 502


class BridgeCallError(ProctoringError):
    """
    浏览器桥接调用失败：
    - 浏览器返回错误（如 NotAllowedError）
    - 连接已断开，挂起的调用被取消
    """
    default_code = 49020
    default_message = "浏览器端调用失败"

    def __init__(self, message: str | None = None, *, name: str = "", method: str = ""):
        self.name = name
        self.method = method
        super().__init__(message, extra={"name": name, "method": method})


class BridgeTimeoutError(BridgeCallError):
    """浏览器端在超时时间内未响应"""
    default_code = 49021
    default_message = "浏览器端响应超时"


# ======================
# 基础设施 / 第三方依赖错误
# ======================

class ServiceUnavailableError(BizError):
    """
    服务暂时不可用
    """
    default_code = 50300
    default_message = "服务暂时不可用，请稍后再试"
    http_status = 503


class CacheUnavailableError(ServiceUnavailableError):
    """
    Redis/缓存不可用：
    - 可选择降级为进程内逻辑
    """
    default_code = 50301
    default_message = "缓存服务不可用"
