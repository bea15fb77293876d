"""Rotas do projeto SistemaNFSe.

Somente o admin do Django fica exposto; a emissão roda pela fila.
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path('admin/', admin.site.urls),
]
