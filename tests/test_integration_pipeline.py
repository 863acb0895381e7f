#!/usr/bin/env python3
"""
Integration tests for ReportPipeline

Runs the full fetch -> filter -> decode -> write pipeline against an in-memory
IMAP server standing in for imaplib.IMAP4_SSL.
"""

import imaplib
import os
import shutil
import sys
import tempfile
import unittest
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.parser import BytesHeaderParser
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import daily_mail_report
from daily_mail_report import (
    AuthError,
    Credentials,
    MailType,
    ReportConfig,
    ReportPipeline,
    ReportWriteError,
)


def build_message(sender, recipient, date, body, subtype='plain', attachment=None):
    """Create raw message bytes for the fake server"""
    text_part = MIMEText(body, subtype, 'utf-8')
    if attachment:
        message = MIMEMultipart('mixed')
        message.attach(text_part)
        attached = MIMEApplication(b'binary', 'octet-stream')
        attached.add_header('Content-Disposition', 'attachment', filename=attachment)
        message.attach(attached)
    else:
        message = text_part

    message['From'] = sender
    message['To'] = recipient
    message['Date'] = date
    message['Subject'] = 'Test'
    return message.as_bytes()


class FakeIMAPServer:
    """Minimal imaplib.IMAP4_SSL replacement serving messages from memory"""

    def __init__(self, folders, password='secret'):
        self.folders = folders
        self.password = password
        self.selected = None
        self.body_fetches = []
        self.fail_fetch_at = None
        self.logged_out = False

    def login(self, user, password):
        # imaplib encodes command arguments as ASCII
        user.encode("ascii")
        password.encode("ascii")
        if password != self.password:
            raise imaplib.IMAP4.error('[AUTHENTICATIONFAILED] Invalid credentials')
        return 'OK', [b'Logged in']

    def select(self, mailbox='INBOX', readonly=False):
        name = mailbox.strip('"')
        if name not in self.folders:
            self.selected = None
            return 'NO', [b'[NONEXISTENT] Unknown Mailbox']
        self.selected = name
        return 'OK', [str(len(self.folders[name])).encode()]

    def list(self):
        return 'OK', [b'(\\HasNoChildren) "/" "' + name.encode() + b'"' for name in self.folders]

    def fetch(self, message_set, items):
        seq = int(message_set)
        if self.fail_fetch_at == (self.selected, seq):
            raise imaplib.IMAP4.abort('socket error: EOF')

        raw = self.folders[self.selected][seq - 1]
        if 'HEADER.FIELDS' in items:
            headers = BytesHeaderParser().parsebytes(raw)
            lines = [f"{name}: {headers[name]}" for name in ('Date', 'From', 'To') if headers[name] is not None]
            literal = ("\r\n".join(lines) + "\r\n\r\n").encode()
            prefix = b'%d (UID %d FLAGS () BODY[HEADER.FIELDS (DATE FROM TO)] {%d}' % (seq, 1000 + seq, len(literal))
            return 'OK', [(prefix, literal), b')']

        self.body_fetches.append((self.selected, seq))
        return 'OK', [(b'%d (BODY[] {%d}' % (seq, len(raw)), raw), b')']

    def close(self):
        self.selected = None
        return 'OK', [b'']

    def logout(self):
        self.logged_out = True
        return 'BYE', [b'']

    def shutdown(self):
        pass


class TestReportPipelineIntegration(unittest.TestCase):
    """End-to-end tests of a report run"""

    def setUp(self):
        print_patcher = patch('builtins.print')
        print_patcher.start()
        self.addCleanup(print_patcher.stop)

        self.test_dir = tempfile.mkdtemp()
        self.config = ReportConfig()
        self.config.output_dir = self.test_dir
        self.credentials = Credentials('user@x.com', 'secret')
        self.progress = []

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def _run(self, server, target_date='2024-03-01', credentials=None):
        with patch('daily_mail_report.imaplib.IMAP4_SSL', return_value=server):
            pipeline = ReportPipeline(self.config, progress=lambda f, s: self.progress.append((f, s)))
            return pipeline.run(credentials or self.credentials, target_date)

    def _read_report(self, name='20240301.txt'):
        with open(os.path.join(self.test_dir, name), 'r', encoding='utf-8') as f:
            return f.read()

    def test_single_received_message_scenario(self):
        """One matching inbox message is kept, the next-day noreply message is not"""
        server = FakeIMAPServer({
            'INBOX': [
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Hello'),
                build_message('noreply@z.com', 'user@x.com', 'Sat, 02 Mar 2024 08:00:00 +0000', 'Promo'),
            ],
            '[Gmail]/Sent Mail': [],
        })

        result = self._run(server)

        self.assertEqual(len(result.records), 1)
        record = result.records[0]
        self.assertEqual(record.mail_type, MailType.RECEIVED)
        self.assertEqual(record.from_address, 'friend@y.com')
        self.assertEqual(record.content, 'Hello')
        self.assertEqual(record.date.strftime('%Y-%m-%d'), '2024-03-01')

        self.assertEqual(result.stats.total_scanned, 2)
        self.assertEqual(result.stats.skipped_date, 1)
        self.assertEqual(result.stats.retained, 1)
        self.assertEqual(result.report_path, os.path.join(self.test_dir, '20240301.txt'))
        self.assertTrue(server.logged_out)

        report = self._read_report()
        self.assertEqual(report.count('Mail Type:'), 1)
        self.assertIn('Sender address: friend@y.com\n', report)
        self.assertIn('Content: Hello\n', report)

    def test_rejected_messages_bodies_never_fetched(self):
        server = FakeIMAPServer({
            'INBOX': [
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Keep'),
                build_message('jobs@linkedin.com', 'user@x.com', 'Fri, 01 Mar 2024 11:00:00 +0000', 'Drop'),
                build_message('friend@y.com', 'user@x.com', 'Thu, 29 Feb 2024 11:00:00 +0000', 'Old'),
            ],
            '[Gmail]/Sent Mail': [],
        })

        result = self._run(server)

        self.assertEqual(server.body_fetches, [('INBOX', 1)])
        self.assertEqual(result.stats.skipped_keyword, 1)
        self.assertEqual(result.stats.skipped_date, 1)

    def test_received_and_sent_merged_and_sorted(self):
        server = FakeIMAPServer({
            'INBOX': [
                build_message('Friend <friend@y.com>', 'User <user@x.com>', 'Fri, 01 Mar 2024 15:00:00 +0000',
                              'Afternoon question', attachment='plan.pdf'),
            ],
            '[Gmail]/Sent Mail': [
                build_message('User <user@x.com>', 'Friend <friend@y.com>', 'Fri, 01 Mar 2024 09:00:00 +0000',
                              '<html><body><p>Morning  note</p></body></html>', subtype='html'),
            ],
        })

        result = self._run(server)

        self.assertEqual([r.mail_type for r in result.records], [MailType.SENT, MailType.RECEIVED])
        self.assertEqual(result.records[0].content, 'Morning note')
        self.assertEqual(result.records[0].to_name, 'Friend')
        self.assertEqual([a.filename for a in result.records[1].attachments], ['plan.pdf'])

        report = self._read_report()
        self.assertLess(report.index('Mail Type: Sent'), report.index('Mail Type: Received'))
        self.assertIn('Attached file1 name: plan.pdf\n', report)

    def test_sent_classification_uses_from_not_folder(self):
        server = FakeIMAPServer({
            'INBOX': [build_message('user@x.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Note to self')],
            '[Gmail]/Sent Mail': [],
        })

        result = self._run(server)

        self.assertEqual(result.records[0].mail_type, MailType.SENT)

    def test_missing_folder_is_skipped(self):
        server = FakeIMAPServer({
            'INBOX': [build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Hello')],
        })

        result = self._run(server)

        self.assertEqual(len(result.records), 1)
        self.assertEqual(result.stats.folder_errors, 1)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn('Sent Mail', result.warnings[0])

    def test_fetch_failure_keeps_collected_records(self):
        server = FakeIMAPServer({
            'INBOX': [
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'First'),
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 11:00:00 +0000', 'Second'),
            ],
            '[Gmail]/Sent Mail': [
                build_message('user@x.com', 'friend@y.com', 'Fri, 01 Mar 2024 12:00:00 +0000', 'Reply'),
            ],
        })
        server.fail_fetch_at = ('INBOX', 2)

        result = self._run(server)

        self.assertEqual([r.content for r in result.records], ['First', 'Reply'])
        self.assertEqual(result.stats.fetch_errors, 1)
        self.assertIn('Content: First', self._read_report())

    def test_decode_warning_does_not_abort(self):
        bad_charset = (b'Date: Fri, 01 Mar 2024 10:00:00 +0000\r\n'
                       b'From: friend@y.com\r\n'
                       b'To: user@x.com\r\n'
                       b'Content-Type: text/plain; charset="x-made-up"\r\n'
                       b'\r\n'
                       b'Odd charset\r\n')
        server = FakeIMAPServer({
            'INBOX': [
                bad_charset,
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 11:00:00 +0000', 'Fine'),
            ],
            '[Gmail]/Sent Mail': [],
        })

        result = self._run(server)

        self.assertEqual([r.content for r in result.records], ['Odd charset', 'Fine'])
        self.assertEqual(result.stats.decode_warnings, 1)

    def test_bad_credentials_abort_without_report(self):
        server = FakeIMAPServer({'INBOX': []}, password='other')

        with self.assertRaises(AuthError):
            self._run(server)

        self.assertFalse(os.path.exists(os.path.join(self.test_dir, '20240301.txt')))
        self.assertTrue(self.progress[-1][1].startswith('Error:'))

    def test_non_ascii_password_reported_as_auth_error(self):
        server = FakeIMAPServer({'INBOX': []})

        with self.assertRaises(AuthError):
            self._run(server, credentials=Credentials('user@x.com', 'sécret'))

        self.assertTrue(self.progress[-1][1].startswith('Error: Login failed'))

    def test_report_write_failure_propagates(self):
        server = FakeIMAPServer({'INBOX': [], '[Gmail]/Sent Mail': []})

        with patch('builtins.open', side_effect=PermissionError('read-only')):
            with self.assertRaises(ReportWriteError):
                self._run(server)

    def test_progress_reaches_done(self):
        server = FakeIMAPServer({
            'INBOX': [
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'a'),
                build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 11:00:00 +0000', 'b'),
            ],
            '[Gmail]/Sent Mail': [
                build_message('user@x.com', 'friend@y.com', 'Fri, 01 Mar 2024 12:00:00 +0000', 'c'),
            ],
        })

        self._run(server)

        fractions = [fraction for fraction, _ in self.progress]
        self.assertEqual(fractions, sorted(fractions))
        self.assertTrue(all(0.0 <= f <= 1.0 for f in fractions))
        self.assertEqual(self.progress[-1], (1.0, 'Done'))
        self.assertIn((0.0, 'Fetching received emails for user@x.com...'), self.progress)
        self.assertIn((0.5, 'Fetching sent emails for user@x.com...'), self.progress)

    def test_repeated_runs_append(self):
        message = build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Hello')

        self._run(FakeIMAPServer({'INBOX': [message], '[Gmail]/Sent Mail': []}))
        self._run(FakeIMAPServer({'INBOX': [message], '[Gmail]/Sent Mail': []}))

        self.assertEqual(self._read_report().count('Content: Hello'), 2)

    def test_invalid_target_date(self):
        pipeline = ReportPipeline(self.config)
        for bad_date in ('2024-3-1', '01-03-2024', '2024-02-30', ''):
            with self.assertRaises(ValueError):
                pipeline.run(self.credentials, bad_date)

    def test_submit_runs_in_background(self):
        server = FakeIMAPServer({
            'INBOX': [build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Hello')],
            '[Gmail]/Sent Mail': [],
        })

        with patch('daily_mail_report.imaplib.IMAP4_SSL', return_value=server):
            with ReportPipeline(self.config) as pipeline:
                result = pipeline.submit(self.credentials, '2024-03-01').result(timeout=30)

        self.assertEqual(len(result.records), 1)

    def test_run_accounts_processes_each_account(self):
        servers = [
            FakeIMAPServer({'INBOX': [build_message('friend@y.com', 'a@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'For A')],
                            '[Gmail]/Sent Mail': []}, password='pa'),
            FakeIMAPServer({'INBOX': [build_message('friend@y.com', 'b@x.com', 'Fri, 01 Mar 2024 09:00:00 +0000', 'For B')],
                            '[Gmail]/Sent Mail': []}, password='pb'),
        ]
        accounts = [Credentials('a@x.com', 'pa'), Credentials('b@x.com', 'pb')]

        with patch('daily_mail_report.imaplib.IMAP4_SSL', side_effect=servers):
            results = ReportPipeline(self.config).run_accounts(accounts, '2024-03-01')

        self.assertEqual([r.account for r in results], ['a@x.com', 'b@x.com'])
        report = self._read_report()
        # Each account run appends its own sorted block set
        self.assertLess(report.index('For A'), report.index('For B'))


class TestMainEntryPoint(unittest.TestCase):
    """Test cases for the command line entry point"""

    def setUp(self):
        for patcher in (patch('builtins.print'), patch('daily_mail_report.load_dotenv')):
            patcher.start()
            self.addCleanup(patcher.stop)
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_main_writes_report(self):
        server = FakeIMAPServer({
            'INBOX': [build_message('friend@y.com', 'user@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'Hello')],
            '[Gmail]/Sent Mail': [],
        })
        env = {'EMAIL_ADDRESS': 'user@x.com', 'APP_PASSWORD': 'secret'}

        with patch.dict(os.environ, env, clear=True):
            with patch('daily_mail_report.imaplib.IMAP4_SSL', return_value=server):
                daily_mail_report.main(['--date', '2024-03-01', '--output-dir', self.test_dir])

        self.assertTrue(os.path.exists(os.path.join(self.test_dir, '20240301.txt')))

    def test_main_processes_every_account_in_credentials_file(self):
        credentials_path = os.path.join(self.test_dir, 'credentials.json')
        with open(credentials_path, 'w', encoding='utf-8') as f:
            f.write('[{"email": "a@x.com", "password": "pa"}, {"email": "b@x.com", "password": "pb"}]')
        servers = [
            FakeIMAPServer({'INBOX': [build_message('friend@y.com', 'a@x.com', 'Fri, 01 Mar 2024 10:00:00 +0000', 'For A')],
                            '[Gmail]/Sent Mail': []}, password='pa'),
            FakeIMAPServer({'INBOX': [build_message('friend@y.com', 'b@x.com', 'Fri, 01 Mar 2024 11:00:00 +0000', 'For B')],
                            '[Gmail]/Sent Mail': []}, password='pb'),
        ]

        with patch.dict(os.environ, {}, clear=True):
            with patch('daily_mail_report.imaplib.IMAP4_SSL', side_effect=servers):
                with patch.object(ReportPipeline, 'run_accounts', autospec=True,
                                  side_effect=ReportPipeline.run_accounts) as mock_run_accounts:
                    daily_mail_report.main(['--date', '2024-03-01', '--credentials', credentials_path,
                                            '--output-dir', self.test_dir])

        mock_run_accounts.assert_called_once()
        with open(os.path.join(self.test_dir, '20240301.txt'), 'r', encoding='utf-8') as f:
            report = f.read()
        self.assertIn('Content: For A', report)
        self.assertIn('Content: For B', report)

    def test_main_exits_on_missing_credentials(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(SystemExit) as context:
                daily_mail_report.main(['--date', '2024-03-01', '--output-dir', self.test_dir])

        self.assertEqual(context.exception.code, 1)

    def test_main_exits_on_bad_date(self):
        with patch.dict(os.environ, {'EMAIL_ADDRESS': 'u@x.com', 'APP_PASSWORD': 'p'}, clear=True):
            with self.assertRaises(SystemExit) as context:
                daily_mail_report.main(['--date', '03/01/2024'])

        self.assertEqual(context.exception.code, 1)


if __name__ == '__main__':
    unittest.main()
