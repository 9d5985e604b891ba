# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for the mail queue database."""

from .mail_queue import MailQueueTable, QueueCapabilities, SchemaError

__all__ = ["MailQueueTable", "QueueCapabilities", "SchemaError"]
