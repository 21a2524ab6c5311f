from django.urls import path

from kan_django import views

urlpatterns = [
    path("api/files/<path:file_path>", views.files_view, name="files"),
]
