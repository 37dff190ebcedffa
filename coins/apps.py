from django.apps import AppConfig


class CoinsConfig(AppConfig):
    name = "coins"
    verbose_name = "DasWos Coins"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        from coins import checks  # noqa: F401
