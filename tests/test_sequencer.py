"""Step sequencing and failure propagation."""

import yunohost_install as yi


def _step(name, result=None, calls=None, raises=None):
    def action(ctx):
        if calls is not None:
            calls.append(name)
        if raises is not None:
            raise raises
        return result or yi.StepResult.success()

    return yi.Step(name, name.replace("_", " ").title(), action, f"{name} broke")


def test_runs_every_step_in_order(make_context, run_log):
    calls = []
    steps = [_step(n, calls=calls) for n in ("one", "two", "three")]

    report = yi.StepSequencer(steps, run_log).run(make_context())

    assert report.ok
    assert calls == ["one", "two", "three"]
    assert report.completed == ["one", "two", "three"]


def test_stops_at_first_failure(make_context, run_log):
    calls = []
    steps = [
        _step("one", calls=calls),
        _step("two", yi.StepResult.failure("boom"), calls=calls),
        _step("three", calls=calls),
    ]

    report = yi.StepSequencer(steps, run_log).run(make_context())

    assert not report.ok
    assert calls == ["one", "two"]
    assert report.failed_step == "two"
    assert report.reason == "boom"
    assert report.exit_status == 1

    run_log.close()
    text = run_log.path.read_text()
    assert "[FAIL] two broke: boom" in text


def test_step_failure_and_os_error_become_failures(make_context, run_log):
    steps = [_step("one", raises=yi.StepFailure("curl exited with status 22"))]
    report = yi.StepSequencer(steps, run_log).run(make_context())
    assert report.reason == "curl exited with status 22"

    steps = [_step("two", raises=PermissionError(13, "Permission denied"))]
    report = yi.StepSequencer(steps, run_log).run(make_context())
    assert report.failed_step == "two"
    assert "Permission denied" in report.reason


def test_exempt_step_failure_is_degraded(make_context, run_log):
    calls = []
    steps = [
        _step("restart_services", yi.StepResult.failure("slapd"), calls=calls),
        _step("after", calls=calls),
    ]

    report = yi.StepSequencer(steps, run_log).run(make_context())

    assert report.ok
    assert calls == ["restart_services", "after"]
    assert report.degraded == ["restart_services"]
    assert report.completed == ["after"]


def test_exemption_is_limited_to_listed_steps(make_context, run_log):
    steps = [_step("install_packages", yi.StepResult.failure("apt")), _step("after")]
    report = yi.StepSequencer(steps, run_log).run(make_context())
    assert report.failed_step == "install_packages"


def test_failure_exit_status_is_kept(make_context, run_log):
    steps = [_step("post_install", yi.StepResult.failure("wizard", exit_status=4))]
    report = yi.StepSequencer(steps, run_log).run(make_context())
    assert report.exit_status == 4
