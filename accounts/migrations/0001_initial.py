import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Account",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=[("gmail", "Gmail")], default="gmail", max_length=32)),
                ("email", models.EmailField(max_length=255)),
                ("is_connected", models.BooleanField(default=False)),
                ("sync_enabled", models.BooleanField(default=True)),
                ("history_cursor", models.CharField(blank=True, max_length=64, null=True)),
                ("initial_sync_completed", models.BooleanField(default=False)),
                ("label_sync_completed", models.BooleanField(default=False)),
                ("last_full_sync_at", models.DateTimeField(blank=True, null=True)),
                ("last_incremental_sync_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True, null=True)),
            ],
            options={
                "ordering": ["provider", "email"],
                "unique_together": {("provider", "email")},
            },
        ),
        migrations.AddIndex(
            model_name="account",
            index=models.Index(fields=["provider", "email"], name="accounts_ac_provide_3f2a1c_idx"),
        ),
        migrations.CreateModel(
            name="OAuthToken",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("access_token", models.TextField()),
                ("refresh_token", models.TextField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("token_type", models.CharField(default="Bearer", max_length=32)),
                ("scopes", models.TextField(blank=True, help_text="Comma-separated list of OAuth scopes granted with this token")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="oauth_token", to="accounts.account")),
            ],
        ),
        migrations.AddIndex(
            model_name="oauthtoken",
            index=models.Index(fields=["account", "expires_at"], name="accounts_oa_account_9b7e4d_idx"),
        ),
    ]
