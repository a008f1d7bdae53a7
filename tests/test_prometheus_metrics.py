"""
Tests for Prometheus metrics functionality
"""

from jobengine.services.prometheus_metrics import PrometheusMetrics, prometheus_metrics


class TestPrometheusMetrics:
    """Test the PrometheusMetrics class."""

    def test_increment_requests(self):
        metrics = PrometheusMetrics()
        metrics.increment_requests(200)
        metrics.increment_requests(404)
        metrics.increment_requests(500)

    def test_job_lifecycle_metrics(self):
        metrics = PrometheusMetrics()
        metrics.increment_jobs_created("build")
        metrics.set_active_jobs(1)
        metrics.increment_output_lines(3)
        metrics.record_job_finished("build", "completed", 1.5)
        metrics.set_active_jobs(0)

        text = metrics.get_metrics().decode("utf-8")
        assert 'jobengine_jobs_created_total{type="build"}' in text
        assert 'jobengine_jobs_finished_total{type="build",status="completed"}' in text
        assert "jobengine_job_duration_seconds_bucket" in text

    def test_approval_and_orphan_metrics(self):
        metrics = PrometheusMetrics()
        metrics.increment_approval_decision("approved")
        metrics.increment_approval_decision("timeout")
        metrics.increment_orphan_warnings()
        text = metrics.get_metrics().decode("utf-8")
        assert 'jobengine_approval_decisions_total{decision="timeout"}' in text
        assert "jobengine_orphan_process_warnings_total" in text

    def test_subscriber_gauge(self):
        metrics = PrometheusMetrics()
        metrics.inc_subscribers()
        metrics.dec_subscribers()
        assert "jobengine_live_subscribers" in metrics.get_metrics().decode("utf-8")

    def test_get_metrics(self):
        """Test metrics retrieval."""
        metrics_data = prometheus_metrics.get_metrics()
        assert isinstance(metrics_data, bytes)
        text = metrics_data.decode('utf-8')
        assert '# HELP' in text
        assert '# TYPE' in text
        assert 'jobengine_build_info' in text

    def test_get_content_type(self):
        content_type = prometheus_metrics.get_content_type()
        assert 'text/plain' in content_type
