"""
URL configuration for Config project.

- health/：探活
- api/proctoring/：监考会话查询
- api/schema/：OpenAPI 文档
"""
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView, SpectacularRedocView

from apps.common.health import HealthCheckView

urlpatterns = [
    path('health/', HealthCheckView.as_view(), name='health'),
    path('api/proctoring/', include('apps.proctoring.urls')),
    # OpenAPI 文档：提供 schema JSON 及 UI，仅供内部/前端获取接口定义
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/schema/swagger-ui/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/schema/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
]
