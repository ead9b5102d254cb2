from django.apps import apps
from django.test.runner import DiscoverRunner


class InstalledAppsOnlyDiscoverRunner(DiscoverRunner):
    """Run only the test modules of the project's own apps when no label is given."""

    app_prefix = 'apps.core.'

    def build_suite(self, test_labels=None, **kwargs):
        if not test_labels:
            test_labels = [
                app_config.name
                for app_config in apps.get_app_configs()
                if app_config.name.startswith(self.app_prefix)
            ]
        return super().build_suite(test_labels, **kwargs)
