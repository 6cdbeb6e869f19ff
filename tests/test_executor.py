import unittest
from dataclasses import replace

from fakes import FakeEngine, make_plan, make_script

from sqlrestore.binding import SecretBinder, tag_scripts
from sqlrestore.config import ImportOptions
from sqlrestore.errors import ConnectionLostError, EngineError, EngineTimeoutError
from sqlrestore.executor import RetryPolicy, RunContext, ScriptExecutor
from sqlrestore.models import ErrorKind, RequirementCatalog, RequirementKind, ScriptState, Stage
from sqlrestore.report import ErrorLog


class RetryPolicyTestCase(unittest.TestCase):
    def test_dependency_errors_are_retryable(self):
        policy = RetryPolicy()
        self.assertEqual(policy.classify(EngineError("Invalid object name 'dbo.T'.", 208)),
                         ErrorKind.DEPENDENCY_UNRESOLVED)
        self.assertEqual(policy.classify(EngineError("Incorrect syntax near 'FROM'.", 102)),
                         ErrorKind.EXECUTION_FATAL)

    def test_message_patterns_when_no_number(self):
        policy = RetryPolicy()
        self.assertTrue(policy.is_retryable(EngineError("Invalid object name 'dbo.T'.")))
        self.assertFalse(policy.is_retryable(EngineError("Permission denied")))

    def test_configured_pattern_applies_to_numbered_errors(self):
        options = ImportOptions(retryable_message_patterns=(r'synonym .* does not exist',))
        policy = RetryPolicy.from_options(options)
        error = EngineError("Msg 5313: Synonym 'dbo.S' does not exist yet", 5313)
        self.assertNotIn(5313, policy.retryable_numbers)
        self.assertTrue(policy.is_retryable(error))
        self.assertFalse(RetryPolicy().is_retryable(error))

    def test_timeouts_are_terminal(self):
        policy = RetryPolicy()
        error = EngineTimeoutError("Query timeout expired", 208)
        self.assertFalse(policy.is_retryable(error))
        self.assertEqual(policy.classify(error), ErrorKind.TIMEOUT)

    def test_from_options_extends_defaults(self):
        policy = RetryPolicy.from_options(ImportOptions(retryable_error_numbers=frozenset({50000})))
        self.assertIn(50000, policy.retryable_numbers)
        self.assertIn(208, policy.retryable_numbers)

    def test_from_options_replaces_defaults(self):
        options = ImportOptions(retryable_error_numbers=frozenset({50000}),
                                retryable_message_patterns=('custom',),
                                replace_default_retry_policy=True)
        policy = RetryPolicy.from_options(options)
        self.assertEqual(policy.retryable_numbers, frozenset({50000}))
        self.assertFalse(policy.is_retryable(EngineError("Invalid object name 'x'.")))
        self.assertTrue(policy.is_retryable(EngineError("a CUSTOM failure")))


class ScriptExecutorTestCase(unittest.TestCase):
    def setUp(self):
        self.error_log = ErrorLog()

    def _run(self, plan, engine, **kwargs):
        context = RunContext(plan)
        ScriptExecutor(engine, self.error_log, **kwargs).run(context)
        return context

    def _assert_partitioned(self, context):
        for path, state in context.states.items():
            self.assertIn(state, (ScriptState.SUCCEEDED, ScriptState.FAILED), path)
        self.assertEqual(context.succeeded_count + context.failed_count, context.plan.script_count)
        self.assertEqual(context.failed_count, len(self.error_log.records))

    def test_three_stage_view_and_table(self):
        table = make_script('dbo.Orders', "CREATE TABLE dbo.Orders (Id INT)", Stage.TABLES, 0)
        v1 = make_script('dbo.V1', "CREATE VIEW dbo.V1 AS SELECT Id FROM dbo.V2", Stage.VIEWS, 1)
        v2 = make_script('dbo.V2', "CREATE VIEW dbo.V2 AS SELECT Id FROM dbo.Orders", Stage.VIEWS, 2)
        engine = FakeEngine()
        context = self._run(make_plan(table, v1, v2), engine)

        self._assert_partitioned(context)
        self.assertEqual(context.succeeded_count, 3)
        self.assertEqual(context.pass_number, 2)
        self.assertEqual(context.attempt_count(v1), 2)
        self.assertEqual(context.attempt_count(v2), 1)
        outcomes = [a.outcome for a in context.attempts[v1.relative_path]]
        self.assertEqual(outcomes, [ScriptState.DEFERRED, ScriptState.SUCCEEDED])
        self.assertEqual(self.error_log.records, [])

    def test_view_waits_for_table_in_later_stage(self):
        first = make_script('dbo.A', "CREATE TABLE dbo.A (Id INT)", Stage.TABLES, 0)
        view = make_script('dbo.V', "CREATE VIEW dbo.V AS SELECT Id FROM dbo.Late", Stage.VIEWS, 1)
        late = make_script('dbo.Late', "CREATE TABLE dbo.Late (Id INT)", Stage.PROGRAMMABILITY, 2)
        context = self._run(make_plan(first, view, late), FakeEngine())

        self._assert_partitioned(context)
        self.assertEqual(context.failed_count, 0)
        self.assertEqual(context.pass_number, 2)
        self.assertEqual([a.outcome for a in context.attempts[view.relative_path]],
                         [ScriptState.DEFERRED, ScriptState.SUCCEEDED])
        self.assertEqual([a.pass_number for a in context.attempts[view.relative_path]], [1, 2])

    def test_unreadable_script_fails_alone(self):
        ok = make_script('dbo.Ok', "CREATE TABLE dbo.Ok (Id INT)", Stage.TABLES, 0)
        broken = replace(make_script('dbo.Broken', '', Stage.TABLES, 1),
                         read_error="Cannot read script: [Errno 13] Permission denied")
        engine = FakeEngine()
        context = self._run(make_plan(ok, broken), engine)

        self._assert_partitioned(context)
        self.assertEqual(context.succeeded_count, 1)
        self.assertEqual(context.state(broken), ScriptState.FAILED)
        record = self.error_log.records[0]
        self.assertIs(record.kind, ErrorKind.EXECUTION_FATAL)
        self.assertIn('Permission denied', record.error)
        self.assertEqual(len(engine.calls), 1)

    def test_stage_order_on_first_pass(self):
        view = make_script('dbo.V', "CREATE VIEW dbo.V AS SELECT 1 AS x", Stage.VIEWS, 0)
        proc = make_script('dbo.P', "CREATE PROCEDURE dbo.P AS SELECT 1", Stage.PROCEDURES, 1)
        table = make_script('dbo.T', "CREATE TABLE dbo.T (Id INT)", Stage.TABLES, 2)
        engine = FakeEngine()
        self._run(make_plan(proc, view, table), engine)
        first_batches = [batches[0][0] for batches in engine.calls]
        self.assertEqual(first_batches, [table.sql, view.sql, proc.sql])

    def test_forward_chain_converges(self):
        scripts = [
            make_script('dbo.A', "CREATE VIEW dbo.A AS SELECT * FROM dbo.B", order=0),
            make_script('dbo.B', "CREATE VIEW dbo.B AS SELECT * FROM dbo.C", order=1),
            make_script('dbo.C', "CREATE VIEW dbo.C AS SELECT * FROM dbo.D", order=2),
            make_script('dbo.D', "CREATE VIEW dbo.D AS SELECT 1 AS x", order=3),
        ]
        context = self._run(make_plan(*scripts), FakeEngine())
        self._assert_partitioned(context)
        self.assertEqual(context.succeeded_count, 4)
        self.assertEqual(context.pass_number, 4)
        self.assertEqual(context.attempt_count(scripts[0]), 4)

    def test_max_retry_passes(self):
        scripts = [
            make_script('dbo.A', "CREATE VIEW dbo.A AS SELECT * FROM dbo.B", order=0),
            make_script('dbo.B', "CREATE VIEW dbo.B AS SELECT * FROM dbo.C", order=1),
            make_script('dbo.C', "CREATE VIEW dbo.C AS SELECT * FROM dbo.D", order=2),
            make_script('dbo.D', "CREATE VIEW dbo.D AS SELECT 1 AS x", order=3),
        ]
        context = self._run(make_plan(*scripts), FakeEngine(), max_retry_passes=1)
        self._assert_partitioned(context)
        self.assertEqual(context.pass_number, 2)
        self.assertEqual(context.succeeded_count, 2)
        failed = {r.script: r for r in self.error_log.records}
        self.assertEqual(set(failed), {'dbo.A', 'dbo.B'})
        self.assertTrue(all(r.kind is ErrorKind.DEPENDENCY_UNRESOLVED for r in failed.values()))
        self.assertEqual(failed['dbo.A'].attempts, 2)

    def test_no_retry_passes(self):
        script = make_script('dbo.A', "CREATE VIEW dbo.A AS SELECT * FROM dbo.Missing")
        context = self._run(make_plan(script), FakeEngine(), max_retry_passes=0)
        self.assertEqual(context.pass_number, 1)
        self.assertEqual(self.error_log.records[0].kind, ErrorKind.DEPENDENCY_UNRESOLVED)

    def test_zero_progress_pass_promotes_all_remaining(self):
        v1 = make_script('dbo.V1', "CREATE VIEW dbo.V1 AS SELECT * FROM dbo.V2", order=0)
        v2 = make_script('dbo.V2', "CREATE VIEW dbo.V2 AS SELECT * FROM dbo.V1", order=1)
        ok = make_script('dbo.T', "CREATE TABLE dbo.T (Id INT)", Stage.TABLES, 2)
        context = self._run(make_plan(ok, v1, v2), FakeEngine())

        self._assert_partitioned(context)
        self.assertEqual(context.pass_number, 2)
        self.assertEqual(context.state(ok), ScriptState.SUCCEEDED)
        self.assertEqual(len(self.error_log.records), 2)
        for record in self.error_log.records:
            self.assertIs(record.kind, ErrorKind.DEPENDENCY_UNRESOLVED)
            self.assertEqual(record.attempts, 2)
            self.assertIn('Invalid object name', record.error)

    def test_fatal_error_not_retried(self):
        bad = make_script('dbo.Bad', "CREATE TABLE dbo.Bad (Id INT BROKEN)", Stage.TABLES)
        engine = FakeEngine(failures={'BROKEN': EngineError("Incorrect syntax near 'BROKEN'.", 102)})
        context = self._run(make_plan(bad), engine)
        self._assert_partitioned(context)
        self.assertEqual(context.pass_number, 1)
        record = self.error_log.records[0]
        self.assertIs(record.kind, ErrorKind.EXECUTION_FATAL)
        self.assertEqual(record.attempts, 1)
        self.assertEqual(record.error, "Msg 102: Incorrect syntax near 'BROKEN'.")
        self.assertEqual(len(engine.calls), 1)

    def test_timeout_is_terminal(self):
        slow = make_script('dbo.Slow', "CREATE VIEW dbo.Slow AS SELECT 1 AS x -- SLOW")
        engine = FakeEngine(failures={'SLOW': EngineTimeoutError("Query timeout expired", sqlstate='HYT00')})
        context = self._run(make_plan(slow), engine)
        self.assertEqual(context.state(slow), ScriptState.FAILED)
        self.assertIs(self.error_log.records[0].kind, ErrorKind.TIMEOUT)
        self.assertEqual(len(engine.calls), 1)

    def test_batches_and_repeat_counts(self):
        script = make_script('dbo.Seed', "CREATE TABLE dbo.Seed (Id INT)\nGO\nINSERT INTO dbo.Seed DEFAULT VALUES\nGO 3\n",
                             Stage.TABLES)
        engine = FakeEngine()
        self._run(make_plan(script), engine)
        self.assertEqual(engine.calls[0], [("CREATE TABLE dbo.Seed (Id INT)", 1),
                                           ("INSERT INTO dbo.Seed DEFAULT VALUES", 3)])

    def test_sqlcmd_variables_rendered(self):
        script = make_script('FileGroups', "ALTER DATABASE CURRENT ADD FILE (FILENAME = '$(FG_ARCHIVE_PATH_FILE)')",
                             Stage.FILE_GROUPS)
        engine = FakeEngine()
        self._run(make_plan(script), engine, variables={'FG_ARCHIVE_PATH_FILE': '/var/opt/mssql/a.ndf'})
        self.assertTrue(engine.sent("FILENAME = '/var/opt/mssql/a.ndf'"))

    def test_fail_fast_skips_later_stages(self):
        bad = make_script('dbo.Bad', "CREATE TABLE dbo.Bad (Id INT BROKEN)", Stage.TABLES, 0)
        good = make_script('dbo.Good', "CREATE TABLE dbo.Good (Id INT)", Stage.TABLES, 1)
        view = make_script('dbo.V', "CREATE VIEW dbo.V AS SELECT Id FROM dbo.Good", Stage.VIEWS, 2)
        engine = FakeEngine(failures={'BROKEN': EngineError("Incorrect syntax near 'BROKEN'.", 102)})
        context = self._run(make_plan(bad, good, view), engine, fail_fast=True)

        self._assert_partitioned(context)
        self.assertEqual(context.state(good), ScriptState.SUCCEEDED)
        self.assertFalse(engine.sent(view.sql))
        kinds = {r.script: r.kind for r in self.error_log.records}
        self.assertEqual(kinds, {'dbo.Bad': ErrorKind.EXECUTION_FATAL, 'dbo.V': ErrorKind.SKIPPED})

    def test_fail_fast_includes_deferred_scripts(self):
        bad = make_script('dbo.Bad', "CREATE VIEW dbo.Bad AS SELECT BROKEN", order=0)
        waiting = make_script('dbo.W', "CREATE VIEW dbo.W AS SELECT * FROM dbo.Later", order=1)
        engine = FakeEngine(failures={'BROKEN': EngineError("Incorrect syntax.", 102)})
        context = self._run(make_plan(bad, waiting), engine, fail_fast=True)
        self._assert_partitioned(context)
        record = next(r for r in self.error_log.records if r.script == 'dbo.W')
        self.assertIs(record.kind, ErrorKind.SKIPPED)
        self.assertIn('Invalid object name', record.error)
        self.assertEqual(len(context.retry_queue), 0)

    def test_connection_loss_propagates(self):
        first = make_script('dbo.A', "CREATE TABLE dbo.A (Id INT)", Stage.TABLES, 0)
        second = make_script('dbo.B', "CREATE TABLE dbo.B (Id INT) -- DROP", Stage.TABLES, 1)
        engine = FakeEngine(failures={'DROP': ConnectionLostError("Communication link failure")})
        context = RunContext(make_plan(first, second))
        with self.assertRaises(ConnectionLostError):
            ScriptExecutor(engine, self.error_log).run(context)
        self.assertEqual(context.state(first), ScriptState.SUCCEEDED)
        self.assertEqual(self.error_log.records, [])


class MissingSecretTestCase(unittest.TestCase):
    ROLE_SQL = "CREATE APPLICATION ROLE [Reporting] WITH PASSWORD = N'$(ApplicationRole_Reporting_Password)';"

    def _run(self, secrets):
        role = make_script('Reporting', self.ROLE_SQL, Stage.SECURITY_PRINCIPALS, 0)
        table = make_script('dbo.T', "CREATE TABLE dbo.T (Id INT)", Stage.TABLES, 1)
        scripts = [role, table]
        bindings = SecretBinder(secrets).bind(RequirementCatalog(), scripts)
        self.engine = FakeEngine()
        self.error_log = ErrorLog()
        context = RunContext(make_plan(*scripts))
        ScriptExecutor(self.engine, self.error_log, bindings=bindings, tags=tag_scripts(scripts)).run(context)
        return context, role, table

    def test_missing_application_role_secret(self):
        context, role, table = self._run({})
        self.assertEqual(context.state(role), ScriptState.FAILED)
        self.assertEqual(context.state(table), ScriptState.SUCCEEDED)
        self.assertFalse(self.engine.sent('APPLICATION ROLE'))
        self.assertEqual(context.attempt_count(role), 0)
        record = self.error_log.records[0]
        self.assertIs(record.kind, ErrorKind.MISSING_SECRET)
        self.assertIn('ApplicationRole Reporting', record.error)

    def test_bound_secret_is_injected(self):
        context, role, _ = self._run({RequirementKind.APPLICATION_ROLE: {'Reporting': "s3cr'et"}})
        self.assertEqual(context.state(role), ScriptState.SUCCEEDED)
        self.assertTrue(self.engine.sent("WITH PASSWORD = N's3cr''et';"))
        self.assertFalse(self.engine.sent('$(ApplicationRole_Reporting_Password)'))


if __name__ == '__main__':
    unittest.main()
