"""Entry points meant to be run by an external scheduler (cron, k8s CronJob)."""
