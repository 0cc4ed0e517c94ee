from django.apps import AppConfig


class ProctoringConfig(AppConfig):
    """
    Proctoring 应用配置：
    - 监考会话协调（选手端 / 监考端 WebSocket）与会话查询接口
    - 无数据库模型，会话状态保存在进程内与 Redis
    """

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.proctoring'
    label = 'proctoring'
    verbose_name = "Proctoring"
