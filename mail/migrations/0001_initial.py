import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="EmailMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("external_message_id", models.CharField(max_length=64)),
                ("thread_id", models.CharField(blank=True, max_length=64, null=True)),
                ("history_id", models.CharField(blank=True, max_length=64, null=True)),
                ("internal_date", models.BigIntegerField(blank=True, null=True)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("snippet", models.TextField(blank=True, null=True)),
                ("size_estimate", models.IntegerField(blank=True, null=True)),
                ("subject", models.CharField(blank=True, max_length=512, null=True)),
                ("from_address", models.CharField(blank=True, max_length=255, null=True)),
                ("date_sent", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="email_messages", to="accounts.account")),
            ],
            options={
                "ordering": ["-internal_date", "-created_at"],
                "unique_together": {("account", "external_message_id")},
            },
        ),
        migrations.AddIndex(
            model_name="emailmessage",
            index=models.Index(fields=["account", "internal_date"], name="mail_emailm_account_4c1d2e_idx"),
        ),
        migrations.AddIndex(
            model_name="emailmessage",
            index=models.Index(fields=["account", "created_at"], name="mail_emailm_account_7a9f3b_idx"),
        ),
        migrations.AddIndex(
            model_name="emailmessage",
            index=models.Index(fields=["account", "thread_id"], name="mail_emailm_account_2e8c6a_idx"),
        ),
        migrations.CreateModel(
            name="Header",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("value", models.TextField(blank=True, null=True)),
                ("message", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="headers", to="mail.emailmessage")),
            ],
        ),
        migrations.AddIndex(
            model_name="header",
            index=models.Index(fields=["message", "name"], name="mail_header_message_5d3b8f_idx"),
        ),
        migrations.CreateModel(
            name="MessagePart",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("part_id", models.CharField(max_length=50)),
                ("parent_part_id", models.CharField(blank=True, max_length=50, null=True)),
                ("mime_type", models.CharField(max_length=200)),
                ("filename", models.CharField(blank=True, max_length=500, null=True)),
                ("body", models.TextField(blank=True, null=True)),
                ("size_estimate", models.IntegerField(blank=True, null=True)),
                ("message", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="parts", to="mail.emailmessage")),
            ],
            options={
                "ordering": ["message", "id"],
                "unique_together": {("message", "part_id")},
            },
        ),
        migrations.CreateModel(
            name="Label",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("external_label_id", models.CharField(max_length=255)),
                ("name", models.CharField(max_length=255)),
                ("type", models.CharField(choices=[("system", "System"), ("user", "User")], default="user", max_length=16)),
                ("color", models.CharField(blank=True, max_length=32, null=True)),
                ("label_list_visibility", models.BooleanField(default=True)),
                ("message_list_visibility", models.BooleanField(default=True)),
                ("messages_total", models.IntegerField(default=0)),
                ("messages_unread", models.IntegerField(default=0)),
                ("threads_total", models.IntegerField(default=0)),
                ("threads_unread", models.IntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="labels", to="accounts.account")),
            ],
            options={
                "ordering": ["account", "name"],
                "unique_together": {("account", "external_label_id")},
            },
        ),
        migrations.CreateModel(
            name="MessageLabel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("external_label_id", models.CharField(max_length=255)),
                ("message", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="message_labels", to="mail.emailmessage")),
            ],
            options={
                "unique_together": {("message", "external_label_id")},
            },
        ),
        migrations.AddIndex(
            model_name="messagelabel",
            index=models.Index(fields=["external_label_id"], name="mail_messag_externa_6b2f9c_idx"),
        ),
        migrations.CreateModel(
            name="SyncProgress",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("initial", "Initial"), ("incremental", "Incremental"), ("labels", "Labels")], max_length=16)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("in_progress", "In progress"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=16)),
                ("cursor", models.CharField(blank=True, max_length=255, null=True)),
                ("start_history_id", models.CharField(blank=True, max_length=64, null=True)),
                ("num_processed", models.IntegerField(default=0)),
                ("num_total", models.IntegerField(default=0)),
                ("batches_completed", models.IntegerField(default=0)),
                ("batches_total", models.IntegerField(default=0)),
                ("error_message", models.TextField(blank=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="sync_progress", to="accounts.account")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
            },
        ),
        migrations.AddIndex(
            model_name="syncprogress",
            index=models.Index(fields=["account", "kind", "status"], name="mail_syncpr_account_1f4e7a_idx"),
        ),
        migrations.AddConstraint(
            model_name="syncprogress",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status__in", ["pending", "in_progress"])),
                fields=("account", "kind"),
                name="mail_syncprogress_one_active_per_kind",
            ),
        ),
    ]
