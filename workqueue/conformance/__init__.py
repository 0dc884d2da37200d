"""Reserved for behavioural checks of workqueue implementations; it holds no modules yet."""